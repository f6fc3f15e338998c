"""Business services for the rate limiter."""
