"""Background jobs: outbox delivery, reservation expiry, payment reconciliation, lifecycle."""
