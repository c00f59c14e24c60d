"""Chain-facing interfaces and their in-process simulation."""

from echelon.chain.base import (
    ChainClient,
    EventCallback,
    Identity,
    ReputationOracle,
    SwapVenue,
    TxReceipt,
)
from echelon.chain.simulated import SimulatedChain, SimulatedOracle, SimulatedVenue

__all__ = [
    "ChainClient",
    "EventCallback",
    "Identity",
    "ReputationOracle",
    "SimulatedChain",
    "SimulatedOracle",
    "SimulatedVenue",
    "SwapVenue",
    "TxReceipt",
]
