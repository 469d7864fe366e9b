"""Subscription entitlement and payment-provider synchronization service."""
