"""Publish/subscribe subscription storage."""

from sqlpersist.subscription.persister import Subscriber, SubscriptionPersister

__all__ = ["Subscriber", "SubscriptionPersister"]
