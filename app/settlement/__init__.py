"""
Order settlement engine.

This app handles:
- Order lifecycle (django-fsm state machine with status history)
- Pricing/VAT snapshot, locked at first authorization
- Milestone escrow ledger (authorize, capture, deliver, review, release)
- Cancellation with a single refund of captured escrow
- Reconciliation of partial commits against Stripe

Related apps:
    - core: Base models, exceptions, service base classes

Usage:
    from settlement.services import EscrowOrchestrator

    EscrowOrchestrator.capture_escrow(order_id)
"""
