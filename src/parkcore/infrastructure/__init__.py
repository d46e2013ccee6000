"""Infrastructure layer: storage, configuration, factories and events."""
