"""Flask mock endpoint for exercising single logout locally."""
