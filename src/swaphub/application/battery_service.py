# File: src/swaphub/application/battery_service.py
"""
Battery Entity Store

Per-battery identity, health and status. The swap engine moves batteries
through is-booking and in-use on its own; this service covers registration,
maintenance actions, health readings, transfers and the audit trail.

Every mutation runs under the lock of the station the battery belongs to
and appends a BatteryLogEntry in the same commit.
"""

from typing import Dict, List, Optional, Any
from collections import Counter

from ..domain.models import BatteryStatus, BatteryLogEntry
from ..domain.aggregates import Battery
from ..domain.errors import InvalidState, StationNotFound
from .base import ApplicationService, EventCollector


class BatteryStore(ApplicationService):
    """Application service for battery inventory"""

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, battery_id: str) -> Battery:
        with self.uow_factory() as uow:
            return self._load_battery(uow, battery_id)

    def get_by_serial(self, serial: str) -> Optional[Battery]:
        with self.uow_factory() as uow:
            return uow.batteries.find_by_serial(serial.strip())

    def list_for_station(self, station_id: str, include_retired: bool = False) -> List[Battery]:
        with self.uow_factory() as uow:
            return uow.batteries.find_by_station(station_id, include_retired)

    def get_logs(self, battery_id: str) -> List[BatteryLogEntry]:
        """Audit trail, oldest first"""
        with self.uow_factory() as uow:
            self._load_battery(uow, battery_id)
            return uow.battery_logs.list_for_battery(battery_id)

    def statistics(self, station_id: Optional[str] = None) -> Dict[str, Any]:
        """Totals by status, average SOH and total cycles; retired batteries reported separately"""
        with self.uow_factory() as uow:
            if station_id is not None:
                batteries = uow.batteries.find_by_station(station_id, include_retired=True)
            else:
                batteries = uow.batteries.list_all()

        active = [b for b in batteries if not b.retired]
        by_status = Counter(b.status.value for b in active)
        return {
            "station": station_id,
            "total": len(active),
            "retired": len(batteries) - len(active),
            "byStatus": {status.value: by_status.get(status.value, 0) for status in BatteryStatus},
            "averageSoh": round(sum(b.soh for b in active) / len(active), 1) if active else 0.0,
            "totalCycles": sum(b.cycle_count for b in active)
        }

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def register(
        self,
        serial: str,
        model: str,
        capacity_kwh: float,
        voltage: float,
        station_id: str,
        manufacturer: Optional[str] = None,
        soh: float = 100.0,
        actor: Optional[str] = None
    ) -> Battery:
        """Create a battery at a station; serials are unique"""
        collector = EventCollector()
        with self.station_locks.hold(station_id):
            with self.uow_factory() as uow:
                self._load_station(uow, station_id)
                if uow.batteries.find_by_serial(serial.strip()) is not None:
                    raise InvalidState(f"Battery serial {serial} is already registered", {"serial": serial})

                battery = Battery.register(
                    serial, model, capacity_kwh, voltage, station_id,
                    manufacturer=manufacturer, soh=soh
                )
                uow.batteries.add(battery)
                self._log(uow, battery, "registered", actor, f"Registered at station {station_id}")
                collector.collect(battery)

        self.logger.info(f"Registered battery {battery.serial} at station {station_id}")
        self._publish(collector.events)
        return battery

    def set_status(
        self,
        battery_id: str,
        new_status: BatteryStatus,
        actor: Optional[str] = None,
        reason: Optional[str] = None
    ) -> Battery:
        """
        Apply an allowed status change

        faulty goes through mark_faulty() and repair(). A battery seated in a
        slot stays at rest unless the slot is held for a booking.
        """
        if new_status == BatteryStatus.FAULTY:
            return self.mark_faulty(battery_id, reason, actor)

        def change(uow, battery: Battery) -> bool:
            self._reject_if_booked(uow, battery)
            if not new_status.is_at_rest and battery.status.is_at_rest:
                pillar = uow.pillars.find_by_battery(battery.id)
                if pillar is not None:
                    raise InvalidState(
                        f"Battery {battery.serial} is seated in a slot and must stay at rest",
                        {"battery_id": battery.id, "pillar_id": pillar.id}
                    )
            return battery.change_status(new_status, reason)

        return self._mutate(battery_id, change, "status_changed", actor, reason or new_status.value)

    def set_health(self, battery_id: str, soh: float, reset: bool = False, actor: Optional[str] = None) -> Battery:
        def change(uow, battery: Battery) -> bool:
            battery.update_health(soh, reset=reset)
            return True

        note = f"SOH {soh}" + (" (maintenance reset)" if reset else "")
        return self._mutate(battery_id, change, "health_updated", actor, note)

    def mark_faulty(self, battery_id: str, reason: Optional[str] = None, actor: Optional[str] = None) -> Battery:
        def change(uow, battery: Battery) -> bool:
            self._reject_if_booked(uow, battery)
            return battery.mark_faulty(reason)

        return self._mutate(battery_id, change, "marked_faulty", actor, reason)

    def repair(self, battery_id: str, actor: Optional[str] = None, note: Optional[str] = None) -> Battery:
        def change(uow, battery: Battery) -> bool:
            battery.repair(note)
            return True

        return self._mutate(battery_id, change, "repaired", actor, note)

    def retire(self, battery_id: str, actor: Optional[str] = None, note: Optional[str] = None) -> Battery:
        def change(uow, battery: Battery) -> bool:
            self._reject_if_booked(uow, battery)
            battery.retire()
            return True

        return self._mutate(battery_id, change, "retired", actor, note)

    def transfer(self, battery_id: str, to_station_id: str, actor: Optional[str] = None) -> Battery:
        """Move a loose at-rest battery to another station's pool"""
        from_station_id = self.get(battery_id).station_id
        collector = EventCollector()

        with self.station_locks.hold_all(from_station_id, to_station_id):
            with self.uow_factory() as uow:
                battery = self._load_battery(uow, battery_id)
                if battery.station_id != from_station_id:
                    raise InvalidState(
                        f"Battery {battery.serial} moved while the transfer was pending",
                        {"battery_id": battery_id}
                    )
                if uow.stations.get(to_station_id) is None:
                    raise StationNotFound(to_station_id)
                self._reject_if_booked(uow, battery)
                if uow.pillars.find_by_battery(battery_id) is not None:
                    raise InvalidState(
                        f"Battery {battery.serial} must be removed from its slot before a transfer",
                        {"battery_id": battery_id}
                    )

                battery.relocate(to_station_id)
                uow.batteries.update(battery)
                self._log(uow, battery, "transferred", actor, f"{from_station_id} -> {to_station_id}")
                collector.collect(battery)

        self.logger.info(f"Transferred battery {battery.serial} to station {to_station_id}")
        self._publish(collector.events)
        return battery

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _mutate(self, battery_id: str, change, action: str, actor: Optional[str], note: Optional[str]) -> Battery:
        """Run ``change(uow, battery)`` under the battery's station lock; False means no-op"""
        station_id = self.get(battery_id).station_id
        collector = EventCollector()

        with self.station_locks.hold(station_id):
            with self.uow_factory() as uow:
                # Re-read under the lock
                battery = self._load_battery(uow, battery_id)
                if battery.station_id != station_id:
                    raise InvalidState(
                        f"Battery {battery.serial} changed station during the update",
                        {"battery_id": battery_id}
                    )

                if change(uow, battery):
                    uow.batteries.update(battery)
                    self._log(uow, battery, action, actor, note)
                    collector.collect(battery)

        self._publish(collector.events)
        return battery

    def _reject_if_booked(self, uow, battery: Battery) -> None:
        """Batteries held by a pending or confirmed booking only move through the swap engine"""
        bookings = uow.bookings.find_open_by_battery(battery.id)
        if bookings:
            self.logger.warning(f"Rejected change to battery {battery.serial}: held by booking {bookings[0].id}")
            raise InvalidState(
                f"Battery {battery.serial} is held by open booking {bookings[0].id}",
                {"battery_id": battery.id, "booking_id": bookings[0].id}
            )

    @staticmethod
    def _log(uow, battery: Battery, action: str, actor: Optional[str], note: Optional[str]) -> None:
        uow.battery_logs.add(BatteryLogEntry(battery.id, action, actor, note))
