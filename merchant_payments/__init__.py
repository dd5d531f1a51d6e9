"""
Merchant Payments - crypto payment notification reconciliation.

Merges payment confirmations arriving from two independent channels:
1. Signed webhook pushes from the payment gateway
2. A persistent websocket notification stream

into one consistent view of each order, crediting the owning user's USD
balance exactly once per confirmed payment.
"""

__version__ = "1.0.0"
