"""Session identity, locking and the durable claim registry."""
