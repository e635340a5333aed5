# File: src/swaphub/domain/strategies.py
"""
Strategy Pattern for replacement battery selection

The swap engine asks a selection strategy for the battery to hand over when
a booking is confirmed. Strategies only rank candidates; they never mutate.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Optional, Tuple, Collection
import logging

from .aggregates import Battery


class BatterySelectionStrategy(ABC):
    """
    Abstract base class for replacement selection algorithms
    """

    def __init__(self):
        self.logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def select(
        self,
        candidates: Iterable[Battery],
        excluded_ids: Collection[str] = ()
    ) -> Optional[Battery]:
        """
        Pick the battery to hand over
        Returns: Battery if one qualifies, None otherwise
        """
        pass

    def is_eligible(self, battery: Battery, excluded_ids: Collection[str]) -> bool:
        return battery.is_available and battery.id not in excluded_ids

    def get_strategy_name(self) -> str:
        return self.__class__.__name__.replace("Strategy", "")

    def __str__(self) -> str:
        return self.get_strategy_name()


class HighestSohStrategy(BatterySelectionStrategy):
    """
    Idle or full battery with the highest SOH

    Ties go to the lowest cycle count, then to the battery whose status
    changed earliest.
    """

    @staticmethod
    def _rank(battery: Battery) -> Tuple[float, int, datetime]:
        return (-battery.soh, battery.cycle_count, battery.updated_at)

    def select(
        self,
        candidates: Iterable[Battery],
        excluded_ids: Collection[str] = ()
    ) -> Optional[Battery]:
        eligible = [b for b in candidates if self.is_eligible(b, excluded_ids)]
        if not eligible:
            self.logger.debug("No eligible replacement battery")
            return None

        chosen = min(eligible, key=self._rank)
        self.logger.debug(
            f"Selected {chosen.serial} (SOH {chosen.soh}, cycles {chosen.cycle_count}) "
            f"from {len(eligible)} candidates"
        )
        return chosen
