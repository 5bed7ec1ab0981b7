"""Core services: settings cascade, context, memory retrieval and writeback."""
