"""Pydantic schemas for API payloads and engagement events."""
