# File: src/parkcore/main.py
"""
Command line entry point for the Parking Facility Core

State lives in a SQL database (SQLite by default) so consecutive commands
see each other's check-ins. Every command prints a JSON document.
"""

from datetime import datetime
from pathlib import Path
from typing import List, Optional
import argparse
import json
import logging
import sys

from .application.parking_service import ParkingService, ParkingCommandHandler
from .infrastructure.config import ConfigProvider
from .infrastructure.factories import GarageLayoutBuilder, populate_inventory
from .infrastructure.messaging import EventBus
from .infrastructure.repositories import SQLAlchemyStorage


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(level: int = logging.WARNING, log_file: Optional[str] = None) -> logging.Logger:
    """Setup application logging configuration"""
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)
    return logging.getLogger("parkcore")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="parkcore", description="Parking facility core")
    parser.add_argument("--config", type=Path, help="Garage configuration file (JSON or YAML)")
    parser.add_argument("--database", help="SQLAlchemy database URL (overrides configuration)")
    parser.add_argument("--log-file", help="Also write logs to this file")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="Increase log verbosity (-v info, -vv debug)")

    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-garage", help="Create spots from the configured layout")

    p = sub.add_parser("check-in", help="Assign a spot to an arriving vehicle")
    p.add_argument("license_plate")
    p.add_argument("vehicle_type", choices=["compact", "standard", "oversized"])
    p.add_argument("--rate-type", default="hourly", choices=["hourly", "daily", "monthly"])
    p.add_argument("--electric", action="store_true")
    p.add_argument("--accessible", action="store_true")
    p.add_argument("--at", type=datetime.fromisoformat, help="Check-in time (ISO format)")

    for name, help_text in (("check-out", "Bill and release a parked vehicle"),
                            ("simulate-checkout", "Show what checkout would charge")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("license_plate")
        p.add_argument("--at", type=datetime.fromisoformat, help="Check-out time (ISO format)")
        p.add_argument("--no-grace", action="store_true", help="Do not apply the grace period")
        p.add_argument("--discount", default="0")

    p = sub.add_parser("simulate-assignment", help="Show which spot a vehicle would get")
    p.add_argument("vehicle_type", choices=["compact", "standard", "oversized"])
    p.add_argument("--electric", action="store_true")
    p.add_argument("--accessible", action="store_true")

    p = sub.add_parser("force-checkout", help="Administrative checkout")
    p.add_argument("license_plate")
    p.add_argument("--reason", default="administrative")

    p = sub.add_parser("ready", help="List vehicles parked at least N minutes")
    p.add_argument("--min-minutes", type=int, default=0)

    sub.add_parser("stats", help="Assignment and checkout statistics")
    return parser


def build_service(config: ConfigProvider, database_url: str) -> ParkingService:
    storage = SQLAlchemyStorage(database_url)
    return ParkingService(
        unit_of_work_factory=storage.unit_of_work,
        config=config,
        event_bus=EventBus(),
    )


def _checkout_options(args) -> dict:
    options = {"discount": args.discount}
    if args.at:
        options["check_out_time"] = args.at
    if args.no_grace:
        options["apply_grace_period"] = False
    return options


def run_command(args, service: ParkingService) -> dict:
    handler = ParkingCommandHandler(service)

    if args.command == "init-garage":
        spots = GarageLayoutBuilder().build_from_config(service.config.config)
        with service.unit_of_work_factory() as uow:
            added = populate_inventory(uow.spots, spots)
            total = uow.spots.count()
        return {"success": True, "data": {"added_spots": added, "total_spots": total}}

    if args.command == "check-in":
        data = {
            "license_plate": args.license_plate,
            "vehicle_type": args.vehicle_type,
            "rate_type": args.rate_type,
            "is_electric": args.electric,
            "requires_accessible": args.accessible,
        }
        if args.at:
            data["check_in_time"] = args.at
        return handler.handle({"type": "check_in", "data": data})

    if args.command in ("check-out", "simulate-checkout"):
        command_type = "check_out" if args.command == "check-out" else "simulate_checkout"
        return handler.handle({"type": command_type, "data": {
            "license_plate": args.license_plate,
            "options": _checkout_options(args),
        }})

    if args.command == "simulate-assignment":
        return handler.handle({"type": "simulate_assignment", "data": {
            "vehicle_type": args.vehicle_type,
            "is_electric": args.electric,
            "requires_accessible": args.accessible,
        }})

    if args.command == "force-checkout":
        return handler.handle({"type": "force_checkout", "data": {
            "license_plate": args.license_plate, "reason": args.reason,
        }})

    if args.command == "ready":
        return handler.handle({"type": "ready_for_checkout",
                               "data": {"min_minutes": args.min_minutes}})

    assignment = handler.handle({"type": "assignment_stats"})
    checkout = handler.handle({"type": "checkout_stats"})
    return {
        "success": assignment["success"] and checkout["success"],
        "data": {"assignment": assignment.get("data"), "checkout": checkout.get("data")},
    }


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    level = {0: logging.WARNING, 1: logging.INFO}.get(args.verbose, logging.DEBUG)
    logger = setup_logging(level, args.log_file)

    config = ConfigProvider(path=args.config)
    database_url = args.database or config.config.database_url
    logger.info(f"Using database {database_url}")

    service = build_service(config, database_url)
    result = run_command(args, service)
    print(json.dumps(result, indent=2, default=str))
    return 0 if result.get("success") else 1


if __name__ == "__main__":
    sys.exit(main())
