"""Real-time chat core: rooms, durable messages, live fan-out."""
