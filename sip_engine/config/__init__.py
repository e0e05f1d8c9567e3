"""Application and scheduler configuration."""
