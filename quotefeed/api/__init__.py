"""HTTP routers for the feed and quote endpoints."""
