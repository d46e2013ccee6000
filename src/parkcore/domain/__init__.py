"""Domain layer: models, aggregates, policies and the two engines."""
