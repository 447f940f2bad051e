"""Rewards redemption settlement service."""
