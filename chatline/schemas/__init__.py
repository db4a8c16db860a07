"""Pydantic schemas for message payloads and API requests/responses."""
