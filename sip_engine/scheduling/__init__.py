"""Schedule registry, reconciler and dispatch worker."""
