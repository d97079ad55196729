"""External collaborators consumed by the engines.

Each collaborator is an abstract base plus an in-memory implementation:
- AssetRegistry: ownership and custody of assets
- RandomnessProvider: two-phase random word delivery
- OracleFeed: latest values of named data series
- TokenLedger: reward payouts
"""
