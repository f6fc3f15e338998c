"""ratekeeper: distributed token-bucket admission control."""
