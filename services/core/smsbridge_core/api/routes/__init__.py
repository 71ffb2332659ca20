"""API routes."""

from smsbridge_core.api.routes import action, app, audit, decision, feeder, metrics, webhooks

__all__ = ["action", "app", "audit", "decision", "feeder", "metrics", "webhooks"]
