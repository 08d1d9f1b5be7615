"""Test suite for the quote feed engagement service."""
