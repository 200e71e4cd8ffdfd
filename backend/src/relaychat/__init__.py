"""Shared realtime plumbing and the chat client library."""
