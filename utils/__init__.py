"""Domain helpers: gateway client, ledger, reconciliation, fee assignments and fee rates.

Request gating lives in ``utils.auth`` (``requires(Capability...)``).
"""
