"""
Escrow app for M-Pesa backed buyer protection.

This app handles:
- Transaction lifecycle (PENDING through COMPLETED, REFUNDED, REJECTED, CANCELLED)
- STK push initiation, callbacks and status polls
- Delivery confirmation codes
- Deadline-driven auto-transitions
- Payout and refund dispatch

Related apps:
    - authentication: Buyer, seller and adjudicator identities
    - notifications: SMS for every lifecycle event

Usage:
    from escrow.commands import Actor, SellerAccept
    from escrow.services import EscrowService

    result = EscrowService.execute(
        SellerAccept(actor=Actor.for_user(user, ActorRole.SELLER), transaction_id=txn.id)
    )
"""
