"""Queue processors: the handlers registered on the QueueBackend."""
