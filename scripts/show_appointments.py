"""
Print a client's or stylist's canonical appointments.

Useful to check how legacy records are reconciled:

    python -m scripts.show_appointments <owner_id> --role stylist
"""

import asyncio
import json
import logging
from argparse import ArgumentParser

from booking.formatting import format_date_long, format_time_12h, status_text
from booking.services.appointment_service import AppointmentService
from database.connection import get_document_store
from database.models import OwnerRole

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def main() -> None:
    parser = ArgumentParser(description="Show reconciled appointments for an owner")
    parser.add_argument("owner_id", help="Client or stylist user id")
    parser.add_argument(
        "--role",
        choices=[role.value for role in OwnerRole],
        default=OwnerRole.CLIENT.value,
        help="Ownership role (default: client)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print canonical appointments as JSON",
    )
    args = parser.parse_args()

    service = AppointmentService(get_document_store())
    appointments = await service.get_appointments(args.owner_id, OwnerRole(args.role))

    if args.json:
        print(json.dumps([a.model_dump(by_alias=True) for a in appointments], indent=2, default=str))
        return

    logger.info(f"Found {len(appointments)} appointments for {args.role} {args.owner_id}")
    for appointment in appointments:
        print(
            f"{appointment.id}  {format_date_long(appointment.date)} "
            f"{format_time_12h(appointment.time)}  {status_text(appointment.status):<12} "
            f"{appointment.client_name or '-'} with {appointment.stylist_name}  "
            f"₱{appointment.final_price:,.2f}"
        )


if __name__ == "__main__":
    asyncio.run(main())
