"""Application layer: the session coordinator and its DTOs."""
