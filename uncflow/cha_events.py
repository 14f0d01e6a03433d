"""Event configurations for the caching and home agent (CHA) boxes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class TransactionType(Enum):
    """Transaction classes whose opcodes the CHA filter can match."""

    PCIE_READ = "PCIeRead"
    PCIE_FULL_WRITE = "PCIeFullWrite"
    PCIE_PARTIAL_WRITE = "PCIePartialWrite"
    PCIE_WRITE_BACK = "PCIeWriteBack"
    DRD_READ = "DRDRead"
    RFO = "RFO"
    ITOM = "ItoM"
    CLFLUSH = "CLFlush"
    WBMTOI = "WbMtoI"
    RXC_IRQ = "RxCIRQ"
    RXC_PRQ = "RxCPRQ"

    @property
    def display_name(self) -> str:
        return self.value

    def opcodes(self) -> tuple[int, int]:
        """Return the ``(opc0, opc1)`` filter opcodes."""
        return _OPCODES[self]


_OPCODES = {
    TransactionType.PCIE_READ: (0x21E, 0),
    TransactionType.PCIE_FULL_WRITE: (0x248, 0),
    TransactionType.PCIE_PARTIAL_WRITE: (0x249, 0),
    TransactionType.PCIE_WRITE_BACK: (0x194, 0),
    TransactionType.DRD_READ: (0x202, 0),
    TransactionType.RFO: (0x200, 0),
    TransactionType.ITOM: (0x204, 0),
    TransactionType.CLFLUSH: (0x204, 0),
    TransactionType.WBMTOI: (0x1C4, 0),
    TransactionType.RXC_IRQ: (0x180, 0),
    TransactionType.RXC_PRQ: (0x181, 0),
}


class LLCState(Enum):
    """Cache line states used by the LLC state filter."""

    M = "M"
    E = "E"
    S = "S"
    I = "I"  # noqa: E741
    SFM = "SFM"
    SFE = "SFE"
    SFS = "SFS"

    @property
    def display_name(self) -> str:
        return self.value

    def state_value(self) -> int:
        return _STATE_VALUES[self]


_STATE_VALUES = {
    LLCState.M: 0x40,
    LLCState.E: 0x20,
    LLCState.S: 0x02,
    LLCState.I: 0x01,
    LLCState.SFM: 0x08,
    LLCState.SFE: 0x04,
    LLCState.SFS: 0x02,
}


class LLCLookupType(Enum):
    """Kinds of LLC lookups."""

    READ = "Read"
    WRITE = "Write"
    REMOTE_SNOOP = "RemoteSnoop"
    ANY = "Any"

    @property
    def display_name(self) -> str:
        return self.value

    def umask(self) -> int:
        return _LOOKUP_UMASKS[self]


_LOOKUP_UMASKS = {
    LLCLookupType.READ: 0x03,
    LLCLookupType.WRITE: 0x05,
    LLCLookupType.REMOTE_SNOOP: 0x09,
    LLCLookupType.ANY: 0x11,
}


class BasicEventType(Enum):
    """Basic TOR events used to measure cache transactions."""

    OCCUPANCY = "Occupancy"
    INSERT = "Insert"
    CLOCK_TICKS = "ClockTicks"

    @property
    def display_name(self) -> str:
        return self.value

    def event_code(self) -> int:
        return _EVENT_CODES[self]

    def umask(self, is_hit: bool) -> int:
        """Return the unit mask selecting IO hits or IO misses."""
        if self is BasicEventType.CLOCK_TICKS:
            return 0x00
        return 0x14 if is_hit else 0x24


_EVENT_CODES = {
    BasicEventType.OCCUPANCY: 0x36,
    BasicEventType.INSERT: 0x35,
    BasicEventType.CLOCK_TICKS: 0x00,
}

EventPairs = tuple[tuple[int, int], tuple[int, int], tuple[int, int], tuple[int, int]]


@dataclass(frozen=True)
class ChaEventConfig:
    """Programming of the four CHA counters and the box filters."""

    name: str
    transaction_type: Optional[TransactionType]
    is_hit: Optional[bool]
    events: EventPairs
    opc0: int = 0
    opc1: int = 0
    state: int = 0

    @classmethod
    def transaction(cls, trans_type: TransactionType, is_hit: bool) -> "ChaEventConfig":
        """Occupancy, inserts and clock ticks for transaction hits or misses."""
        opc0, opc1 = trans_type.opcodes()
        occupancy = BasicEventType.OCCUPANCY
        insert = BasicEventType.INSERT
        events = (
            (occupancy.event_code(), occupancy.umask(is_hit)),
            (insert.event_code(), insert.umask(is_hit)),
            (BasicEventType.CLOCK_TICKS.event_code(), 0),
            (0, 0),
        )
        return cls(
            name=f"{trans_type.display_name} {'Hit' if is_hit else 'Miss'}",
            transaction_type=trans_type,
            is_hit=is_hit,
            events=events,
            opc0=opc0,
            opc1=opc1,
        )

    @classmethod
    def llc_lookup(cls, state: LLCState, lookup_type: LLCLookupType) -> "ChaEventConfig":
        """LLC lookups of one kind filtered by cache line state."""
        return cls(
            name=f"LLC Lookup {state.display_name} {lookup_type.display_name}",
            transaction_type=None,
            is_hit=None,
            events=((0x34, lookup_type.umask()), (0x00, 0), (0x00, 0), (0x00, 0)),
            state=state.state_value(),
        )

    @classmethod
    def eviction(cls) -> "ChaEventConfig":
        return cls(
            name="Eviction",
            transaction_type=None,
            is_hit=None,
            events=((0x36, 0x32), (0x35, 0x32), (0x00, 0x00), (0x00, 0x00)),
        )

    @classmethod
    def all_transactions(cls) -> list["ChaEventConfig"]:
        """A hit and a miss configuration for every transaction type."""
        return [
            cls.transaction(trans_type, is_hit)
            for trans_type in TransactionType
            for is_hit in (True, False)
        ]

    @classmethod
    def all_llc_lookups(cls) -> list["ChaEventConfig"]:
        """A configuration for every state and lookup kind."""
        return [
            cls.llc_lookup(state, lookup_type)
            for state in LLCState
            for lookup_type in LLCLookupType
        ]