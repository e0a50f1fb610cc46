"""Real-time messaging: socket endpoint, dispatch, read receipts and REST routes."""
