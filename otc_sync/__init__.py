"""
Order synchronization and cache engine for the OTC swap escrow contract.
"""
