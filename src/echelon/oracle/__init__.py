"""Mirror ledger reputation scores onto the on-chain oracle."""

from echelon.oracle.sync import OracleSync, SyncState

__all__ = ["OracleSync", "SyncState"]
