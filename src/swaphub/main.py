# File: src/swaphub/main.py
"""
Main application entry point for SwapHub
Wires the services from configuration and runs a demo swap when asked
"""

from dataclasses import replace
from typing import Any, Dict, List, Optional
import argparse
import json
import logging

from .config import Settings, setup_logging
from .domain.models import BatteryStatus, Location
from .infrastructure.factories import ServiceFactory, StationBuilder
from .application.commands import ConfirmSwapRequestCommand, RecordReturnedBatteryCommand


class SwapHubApplication:
    """Main application controller that sets up all components"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings.from_env()
        self.logger = setup_logging(self.settings)
        self.logger.info("Starting SwapHub...")
        self.services = ServiceFactory(self.settings).create_services()

    def create_demo_station(self):
        """One station, two pillars of four slots, six seated batteries"""
        builder = StationBuilder(self.services).set_basic_info(
            "SwapHub Demo Station", "DEMO-01", Location("1 Demo Street", "Ho Chi Minh City"), capacity=8
        )
        builder.add_pillar(4).add_pillar(4)
        for index, soh in enumerate((99.0, 97.5, 95.0, 92.0, 88.0, 81.5), start=1):
            builder.add_battery(f"DEMO-BAT-{index:03d}", soh=soh)
        builder.add_battery("DRIVER-BAT-001", soh=76.0, seated=False)

        station = builder.build()
        self.logger.info(f"Demo station {station.code} ready")
        return station

    def run_demo_swap(self) -> List[Dict[str, Any]]:
        """Request, confirm and complete one swap; returns the step outputs"""
        station = self.create_demo_station()
        driver_battery = self.services.batteries.get_by_serial("DRIVER-BAT-001")
        self.services.batteries.set_status(driver_battery.id, BatteryStatus.IN_USE, actor="demo")

        steps: List[Dict[str, Any]] = [{"inventory": self.services.inventory.station_inventory(station.id)}]

        booking = self.services.swaps.request_swap({
            "userId": "demo-driver",
            "station": station.id,
            "battery": {"_id": driver_battery.id}
        })
        steps.append({"requested": booking.id})

        for command in (
            ConfirmSwapRequestCommand(booking.id, executed_by="demo-staff"),
            RecordReturnedBatteryCommand(booking.id, executed_by="demo-staff")
        ):
            steps.append(self.services.commands.process(command).to_dict())

        steps.append({"inventory": self.services.inventory.station_inventory(station.id)})
        return steps

    def close(self):
        self.services.close()
        self.logger.info("SwapHub stopped")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="swaphub", description="Battery swap station inventory")
    parser.add_argument("--database-url", help="SQLAlchemy URL; in-memory storage when omitted")
    parser.add_argument("--redis-url", help="Redis URL for cache, leases and the event queue")
    parser.add_argument("--mongo-url", help="MongoDB URL for the event store")
    parser.add_argument("--log-level", help="Logging level")
    parser.add_argument("--demo", action="store_true", help="Seed a demo station and run one swap")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = parse_args(argv)
    settings = Settings.from_env()
    overrides = {
        "database_url": args.database_url,
        "redis_url": args.redis_url,
        "mongo_url": args.mongo_url,
        "log_level": args.log_level.upper() if args.log_level else None,
    }
    settings = replace(settings, **{k: v for k, v in overrides.items() if v is not None})

    app = SwapHubApplication(settings)
    try:
        if args.demo:
            for step in app.run_demo_swap():
                print(json.dumps(step, indent=2, default=str))
        else:
            app.logger.info("Services ready; pass --demo to run a sample swap")
    except Exception as e:
        logging.getLogger(__name__).error(f"SwapHub failed: {e}", exc_info=True)
        return 1
    finally:
        app.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
