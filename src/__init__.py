"""Webhook Relay: a relay server and its subscriber."""
