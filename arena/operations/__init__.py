"""
Operations Layer

This package provides business logic operations that compose database methods
into complete workflows. Operations modules handle multi-step transactions,
validation, and business rules while keeping the database layer a plain data
access layer.

Architecture:
- Database layer: Data access, atomic ledger writes, integrity checks
- Operations layer: Business logic composition and workflows
- API layer: HTTP surface and payload translation

Each operations module focuses on a specific domain:
- PlayerOperations: Identity upsert and upgrade purchases
- SettlementOperations: Run start and the settlement transaction
- ProgressOperations: Mission and achievement progress, mission claims
- WagerOperations: Escrowed 1v1 matches and their settlement
- ShopOperations: Skins and lootboxes

Every operation that moves currency returns a result value (accepted,
Rejected or InfraError) instead of raising for business-rule failures.
"""
