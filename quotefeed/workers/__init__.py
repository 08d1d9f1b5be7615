"""Long-running and batch processes that sit beside the API."""
