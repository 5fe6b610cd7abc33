from .gift_cycle import GiftCycleScheduler

__all__ = ["GiftCycleScheduler"]
