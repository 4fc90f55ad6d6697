"""webplow gateway service."""
