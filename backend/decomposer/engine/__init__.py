"""SlideDecomposer extraction engine — geometry, transparency, orchestration, scheduling."""
