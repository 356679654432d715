"""
Exposure Backend — Abstract Malware Scanner Interface
=======================================================

What:  Contract for the collaborator that scans uploads before they are stored.
Why:   Scanning engines (ClamAV daemon, a cloud API) differ in transport and
       latency. PhotoService only needs a verdict per file, so the engine
       sits behind this interface and can be replaced without touching it.
How:   Concrete scanners inherit from MalwareScanner and implement scan().
       PassthroughScanner is the default and accepts everything.
Who:   Called by PhotoService.upload for every file of a batch, before the
       place lock is taken. One infected verdict rejects the whole batch.
"""

import enum
import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class ScanResult(str, enum.Enum):
    CLEAN = "clean"
    INFECTED = "infected"


class MalwareScanner(ABC):
    """
    Abstract interface for upload scanning.

    Contract:
        - scan() receives the complete file bytes and returns a verdict
        - Engine failures are raised, never reported as CLEAN
    """

    @abstractmethod
    async def scan(self, content: bytes) -> ScanResult:
        """Return CLEAN or INFECTED for one file."""
        ...


class PassthroughScanner(MalwareScanner):
    """Accepts every file. Used when no scanning engine is configured."""

    async def scan(self, content: bytes) -> ScanResult:
        return ScanResult.CLEAN


# ── Singleton Instance ────────────────────────────────────────────────────
malware_scanner: MalwareScanner = PassthroughScanner()
