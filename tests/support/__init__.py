"""In-memory doubles for Redis and the Kafka event log."""
