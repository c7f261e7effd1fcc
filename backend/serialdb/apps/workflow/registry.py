from __future__ import annotations

from serialdb.apps.serials.models import SerialOperationEnum as Op
from serialdb.apps.serials.models import SerialStatusEnum as Status

from .guards import (
    guard_destination_required,
    guard_not_on_loan,
    guard_on_loan,
    guard_source_location_matches,
    guard_transfer_destination,
)

# State of a serial that has never been received.
NO_STATE = "none"

WORKFLOWS = {
    "serial_item": {
        "transitions": {
            NO_STATE: {
                Op.RECEIVE: {"to": Status.ACTIVE, "guards": [guard_destination_required]},
            },
            Status.ACTIVE: {
                Op.SELL: {"to": Status.SOLD, "guards": [guard_source_location_matches, guard_not_on_loan]},
                Op.TRANSFER: {
                    "to": Status.ACTIVE,
                    "guards": [guard_source_location_matches, guard_not_on_loan, guard_transfer_destination],
                },
                Op.LOAN: {"to": Status.ACTIVE, "guards": [guard_not_on_loan, guard_destination_required]},
                Op.LOAN_RETURN: {"to": Status.ACTIVE, "guards": [guard_on_loan, guard_destination_required]},
                Op.MAINTENANCE: {"to": Status.ACTIVE, "guards": []},
                Op.DISPOSE: {"to": Status.SCRAPPED, "guards": []},
            },
            Status.SOLD: {
                Op.RETURN: {"to": Status.RETURNED, "guards": [guard_destination_required]},
                Op.DISPOSE: {"to": Status.SCRAPPED, "guards": []},
            },
            Status.RETURNED: {
                Op.REISSUE: {"to": Status.ACTIVE, "guards": [guard_destination_required]},
                Op.DISPOSE: {"to": Status.SCRAPPED, "guards": []},
            },
            Status.SCRAPPED: {},
        }
    },
}
