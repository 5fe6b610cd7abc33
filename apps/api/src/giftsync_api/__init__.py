"""Subscription milestone gift service."""
