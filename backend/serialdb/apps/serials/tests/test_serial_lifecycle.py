from __future__ import annotations

from decimal import Decimal

import pytest

from serialdb.apps.events import schemas as event_schemas
from serialdb.apps.serials import models, repository, schemas, services
from serialdb.apps.serials.errors import SerialErrorKind
from serialdb.settings import SerialSettings

Op = models.SerialOperationEnum
Status = models.SerialStatusEnum
TT = models.TransType


def _line(serial_no, *, stock_id="TEST001", **kwargs) -> schemas.TransactionLine:
    return schemas.TransactionLine(stock_id=stock_id, serial_no=serial_no, **kwargs)


def _ctx(trans_type, trans_no, *lines, location=None) -> schemas.TransactionContext:
    return schemas.TransactionContext(trans_type=trans_type, trans_no=trans_no, location=location, lines=list(lines))


def _receive(db_session, serial_no="SN123456789", *, stock_id="TEST001", location="DEF", trans_no=None):
    result = services.register_item(
        db_session, stock_id=stock_id, serial_no=serial_no, location=location, trans_no=trans_no
    )
    assert result.success, result.message
    return repository.get_item_by_serial(db_session, stock_id=stock_id, serial_no=serial_no)


def _run(db_session, ctx, settings=None) -> schemas.LedgerResult:
    validation = services.validate_transaction(db_session, ctx, settings)
    if not validation.success:
        return validation
    return services.commit_transaction(db_session, ctx, settings)


def _sell(db_session, item, *, trans_no=123, location=None) -> schemas.LedgerResult:
    return _run(db_session, _ctx(TT.SALES_INVOICE, trans_no, _line(item.serial_no, stock_id=item.stock_id), location=location))


# -------------------------------------------------------------------
# SCENARIOS
# -------------------------------------------------------------------


def test_sale_marks_item_sold_and_records_one_movement(db_session):
    item = repository.create_item(
        db_session,
        data=schemas.SerialItemCreate(stock_id="TEST001", serial_no="SN123456789", location="DEF"),
    )
    db_session.commit()

    ctx = _ctx(TT.SALES_INVOICE, 123, _line("SN123456789"))
    validation = services.validate_transaction(db_session, ctx)
    result = services.commit_transaction(db_session, ctx)

    assert validation.success
    assert result.success
    assert item.status == Status.SOLD
    assert item.location == models.LOCATION_SOLD
    movements = repository.list_movements_by_transaction(db_session, trans_type=10, trans_no=123)
    assert len(movements) == 1
    assert movements[0].location_from == "DEF"
    assert movements[0].location_to == "SOLD"
    assert movements[0].movement_type == Op.SELL
    assert [type(event) for event in result.events] == [event_schemas.SerialMovementRecorded]


def test_reversing_a_sale_restores_item_and_marks_movement(db_session):
    item = repository.create_item(
        db_session,
        data=schemas.SerialItemCreate(stock_id="TEST001", serial_no="SN123456789", location="DEF"),
    )
    db_session.commit()
    assert _sell(db_session, item).success

    result = services.reverse_transaction(db_session, TT.SALES_INVOICE, 123)

    assert result.success
    assert not result.noop
    assert item.status == Status.ACTIVE
    assert item.location == "DEF"
    movements = repository.list_movements_by_transaction(db_session, trans_type=10, trans_no=123)
    original, compensation = movements
    assert original.reversed_at is not None
    assert compensation.movement_type == Op.REVERSAL
    assert compensation.reversal_of_id == original.id
    assert compensation.status_to == Status.ACTIVE
    assert compensation.quantity == Decimal("-1")


def test_generate_serial_uses_stock_prefix_and_never_repeats(db_session):
    _receive(db_session)

    serials = {services.generate_serial(db_session, "TEST001") for _ in range(100)}

    assert len(serials) == 100
    assert all(serial.startswith("TES") for serial in serials)
    assert "SN123456789" not in serials


def test_dispose_of_scrapped_item_is_an_invalid_transition(db_session):
    item = _receive(db_session)
    assert services.dispose_item(db_session, item_id=item.id).success

    result = services.dispose_item(db_session, item_id=item.id)

    assert not result.success
    assert result.error_kind == SerialErrorKind.INVALID_TRANSITION
    assert result.error.current == "scrapped"
    assert result.error.requested == "dispose"


# -------------------------------------------------------------------
# GENERATION
# -------------------------------------------------------------------


def test_generate_serial_gives_up_after_configured_attempts(db_session, monkeypatch):
    _receive(db_session, "TES-261019-AAAAAAAA")
    monkeypatch.setattr(services, "build_serial", lambda stock_id: "TES-261019-AAAAAAAA")

    with pytest.raises(services.GenerationExhausted) as excinfo:
        services.generate_serial(db_session, "TEST001", SerialSettings(max_generation_attempts=3))

    assert excinfo.value.kind == SerialErrorKind.GENERATION_EXHAUSTED


def test_receive_generates_serial_when_enabled(db_session):
    settings = SerialSettings(auto_generate=True)

    result = services.register_item(db_session, stock_id="TEST001", location="DEF", settings=settings)

    assert result.success
    generated = result.movements[0].serial_no
    assert generated.startswith("TES-")
    assert repository.get_item_by_serial(db_session, stock_id="TEST001", serial_no=generated) is not None


def test_receive_without_serial_fails_when_generation_disabled(db_session):
    result = services.register_item(db_session, stock_id="TEST001", location="DEF")

    assert result.error_kind == SerialErrorKind.VALIDATION_FAILED
    assert result.error.detail == [{"field": "serial_no", "reason": "serial number is required"}]


# -------------------------------------------------------------------
# STATE MACHINE
# -------------------------------------------------------------------


def test_full_lifecycle_replays_to_stored_state(db_session):
    item = _receive(db_session, trans_no=1)
    assert _sell(db_session, item, trans_no=10).success
    assert _run(db_session, _ctx(TT.CUSTOMER_CREDIT, 11, _line(item.serial_no), location="RET")).success
    assert item.status == Status.RETURNED
    assert item.location == "RET"
    assert _run(db_session, _ctx(TT.SERIAL_ENTRY, 12, _line(item.serial_no, operation=Op.REISSUE, to_location="DEF"))).success
    assert item.status == Status.ACTIVE
    assert services.transfer_item(db_session, item_id=item.id, to_location="WH2").success
    assert services.dispose_item(db_session, item_id=item.id).success

    state = services.replay_item(db_session, item.id)

    assert state.status == Status.SCRAPPED == item.status
    assert state.location == models.LOCATION_SCRAPPED == item.location
    assert services.verify_item(db_session, item.id) == []
    history = services.get_serial_history(db_session, item.id)
    assert [movement.movement_type for movement in history.movements] == [
        Op.RECEIVE,
        Op.SELL,
        Op.RETURN,
        Op.REISSUE,
        Op.TRANSFER,
        Op.DISPOSE,
    ]


@pytest.mark.parametrize(
    "operation",
    [Op.SELL, Op.RETURN, Op.REISSUE, Op.TRANSFER, Op.DISPOSE, Op.LOAN, Op.LOAN_RETURN, Op.MAINTENANCE],
)
def test_scrapped_items_accept_no_operation(db_session, operation):
    item = _receive(db_session)
    assert services.dispose_item(db_session, item_id=item.id).success

    result = _run(db_session, _ctx(TT.SERIAL_ENTRY, 50, _line(item.serial_no, operation=operation, to_location="WH2")))

    assert result.error_kind == SerialErrorKind.INVALID_TRANSITION
    assert item.status == Status.SCRAPPED


def test_selling_a_sold_item_is_rejected(db_session):
    item = _receive(db_session)
    assert _sell(db_session, item, trans_no=1).success

    result = _sell(db_session, item, trans_no=2)

    assert result.error_kind == SerialErrorKind.INVALID_TRANSITION
    assert result.error.current == "sold"
    assert result.error.requested == "sell"
    assert result.failed_line == 1


def test_returning_an_active_item_is_rejected(db_session):
    item = _receive(db_session)

    result = _run(db_session, _ctx(TT.CUSTOMER_CREDIT, 1, _line(item.serial_no), location="DEF"))

    assert result.error_kind == SerialErrorKind.INVALID_TRANSITION


def test_sold_and_returned_items_can_be_disposed(db_session):
    sold = _receive(db_session, "SN-SOLD")
    returned = _receive(db_session, "SN-RET")
    assert _sell(db_session, sold, trans_no=1).success
    assert _sell(db_session, returned, trans_no=2).success
    assert _run(db_session, _ctx(TT.CUSTOMER_CREDIT, 3, _line("SN-RET"), location="DEF")).success

    assert services.dispose_item(db_session, item_id=sold.id).success
    assert services.dispose_item(db_session, item_id=returned.id).success
    assert sold.status == returned.status == Status.SCRAPPED


def test_sale_from_another_location_fails_validation(db_session):
    item = _receive(db_session, location="DEF")

    result = _sell(db_session, item, location="WH2")

    assert result.error_kind == SerialErrorKind.VALIDATION_FAILED
    assert result.error.detail[0]["field"] == "from_location"
    assert item.status == Status.ACTIVE


def test_transfer_requires_a_new_location(db_session):
    item = _receive(db_session, location="DEF")

    same = services.transfer_item(db_session, item_id=item.id, to_location="DEF")
    moved = services.transfer_item(db_session, item_id=item.id, to_location="WH2")

    assert same.error_kind == SerialErrorKind.VALIDATION_FAILED
    assert moved.success
    assert item.location == "WH2"
    assert item.status == Status.ACTIVE


def test_inventory_adjustment_direction_picks_the_operation(db_session):
    received = _run(
        db_session,
        _ctx(TT.INVENTORY_ADJUSTMENT, 1, _line("SN-ADJ", quantity=Decimal("1")), location="DEF"),
    )
    disposed = _run(
        db_session,
        _ctx(TT.INVENTORY_ADJUSTMENT, 2, _line("SN-ADJ", quantity=Decimal("-1"))),
    )

    assert received.success
    assert disposed.success
    item = repository.get_item_by_serial(db_session, stock_id="TEST001", serial_no="SN-ADJ")
    assert item.status == Status.SCRAPPED


def test_loan_and_return_round_trip(db_session):
    item = _receive(db_session, location="DEF")

    loaned = services.loan_item(db_session, item_id=item.id)
    again = services.loan_item(db_session, item_id=item.id)
    sold_while_loaned = _sell(db_session, item, trans_no=9)
    returned = services.return_loaned_item(db_session, item_id=item.id)

    assert loaned.success
    assert again.error_kind == SerialErrorKind.VALIDATION_FAILED
    assert sold_while_loaned.error_kind == SerialErrorKind.VALIDATION_FAILED
    assert returned.success
    assert item.location == "DEF"
    assert item.status == Status.ACTIVE


def test_return_of_item_not_on_loan_is_rejected(db_session):
    item = _receive(db_session)

    result = services.return_loaned_item(db_session, item_id=item.id)

    assert result.error_kind == SerialErrorKind.VALIDATION_FAILED


def test_maintenance_records_a_movement_without_moving_the_item(db_session):
    item = _receive(db_session, location="DEF")

    result = services.log_maintenance(db_session, item_id=item.id, attributes={"next_maintenance_due": "2027-01-01"})

    assert result.success
    assert result.movements[0].movement_type == Op.MAINTENANCE
    assert result.movements[0].location_to == "DEF"
    assert item.status == Status.ACTIVE
    assert services.get_serial_history(db_session, item.id).attributes == {"next_maintenance_due": "2027-01-01"}


def test_operations_on_missing_item_report_not_found(db_session):
    result = services.transfer_item(db_session, item_id=404, to_location="WH2")

    assert result.error_kind == SerialErrorKind.NOT_FOUND


# -------------------------------------------------------------------
# VALIDATION
# -------------------------------------------------------------------


def test_validation_stops_at_first_failing_line_and_writes_nothing(db_session):
    item = _receive(db_session, "SN-OK")
    ctx = _ctx(TT.SALES_INVOICE, 7, _line("SN-OK"), _line("SN-MISSING"), _line("bad serial"))

    result = services.validate_transaction(db_session, ctx)

    assert not result.success
    assert result.error_kind == SerialErrorKind.NOT_FOUND
    assert result.failed_line == 2
    assert result.error.serial_no == "SN-MISSING"
    assert ctx.claims == {}
    assert item.status == Status.ACTIVE
    assert repository.list_movements_by_transaction(db_session, trans_type=10, trans_no=7) == []


@pytest.mark.parametrize("serial_no", ["bad serial", "-leading-dash", "X" * 51])
def test_malformed_serials_fail_validation(db_session, serial_no):
    result = services.validate_transaction(db_session, _ctx(TT.SUPPLIER_RECEIPT, 1, _line(serial_no), location="DEF"))

    assert result.error_kind == SerialErrorKind.VALIDATION_FAILED
    assert result.error.detail[0]["field"] == "serial_no"


@pytest.mark.parametrize(
    "line_kwargs, ctx_location, field",
    [
        ({"stock_id": "S" * 21}, "DEF", "stock_id"),
        ({"to_location": "L" * 33}, "DEF", "to_location"),
        ({}, "L" * 33, "location"),
        ({"reference": "R" * 101}, "DEF", "reference"),
    ],
)
def test_overlong_fields_fail_validation_without_writing(db_session, line_kwargs, ctx_location, field):
    ctx = _ctx(TT.SUPPLIER_RECEIPT, 1, _line("SN-LONG", **line_kwargs), location=ctx_location)

    result = services.commit_transaction(db_session, ctx)

    assert not result.success
    assert result.error_kind == SerialErrorKind.VALIDATION_FAILED
    assert result.failed_line == 1
    assert [failure["field"] for failure in result.error.detail] == [field]
    assert repository.find_items_by_serial_no(db_session, "SN-LONG") == []
    assert repository.list_movements_by_transaction(db_session, trans_type=TT.SUPPLIER_RECEIPT, trans_no=1) == []


def test_reference_at_the_column_width_is_stored_whole(db_session):
    reference = "R" * models.REFERENCE_LENGTH
    ctx = _ctx(TT.SUPPLIER_RECEIPT, 1, _line("SN-REF", reference=reference), location="DEF")

    assert _run(db_session, ctx).success

    movement = repository.list_movements_by_transaction(db_session, trans_type=TT.SUPPLIER_RECEIPT, trans_no=1)[0]
    assert movement.reference == reference


@pytest.mark.parametrize("name", [" ", "", "A" * 51])
def test_bad_attribute_names_are_returned_as_validation_failures(db_session, name):
    item = _receive(db_session)
    ctx = _ctx(TT.SALES_INVOICE, 5, _line(item.serial_no, attributes={name: "x"}))

    validated = services.validate_transaction(db_session, ctx)
    committed = services.commit_transaction(db_session, ctx)

    for result in (validated, committed):
        assert result.error_kind == SerialErrorKind.VALIDATION_FAILED
        assert result.error.detail[0]["field"] == "attributes"
    assert item.status == Status.ACTIVE
    assert repository.list_attributes_by_serial(db_session, item.id) == []


def test_bad_attribute_names_are_ignored_when_attributes_are_disabled(db_session):
    item = _receive(db_session)
    ctx = _ctx(TT.SALES_INVOICE, 5, _line(item.serial_no, attributes={" ": "x"}))

    result = _run(db_session, ctx, SerialSettings(enable_attributes=False))

    assert result.success
    assert item.status == Status.SOLD


def test_duplicate_serial_within_one_transaction_fails(db_session):
    ctx = _ctx(TT.SUPPLIER_RECEIPT, 1, _line("SN-1"), _line("SN-1"), location="DEF")

    result = services.validate_transaction(db_session, ctx)

    assert result.error_kind == SerialErrorKind.VALIDATION_FAILED
    assert result.failed_line == 2


def test_receiving_an_existing_serial_is_a_duplicate_even_after_disposal(db_session):
    item = _receive(db_session)
    assert services.dispose_item(db_session, item_id=item.id).success

    result = services.validate_transaction(
        db_session, _ctx(TT.SUPPLIER_RECEIPT, 2, _line(item.serial_no), location="DEF")
    )

    assert result.error_kind == SerialErrorKind.DUPLICATE_SERIAL
    assert result.error.current == "scrapped"


def test_validation_records_claims_per_line(db_session):
    item = _receive(db_session)
    ctx = _ctx(TT.SALES_INVOICE, 1, _line(item.serial_no))

    assert services.validate_transaction(db_session, ctx).success

    claim = ctx.claims[1]
    assert claim.serial_item_id == item.id
    assert claim.version == item.version
    assert claim.status == Status.ACTIVE


def test_non_serialized_lines_are_skipped(db_session):
    item = _receive(db_session)
    ctx = _ctx(
        TT.SALES_INVOICE,
        1,
        _line(item.serial_no),
        _line(None, stock_id="SCREWS", quantity=Decimal("40"), serialized=False),
    )

    result = _run(db_session, ctx)

    assert result.success
    assert len(result.movements) == 1


def test_line_must_cover_a_single_unit(db_session):
    result = services.validate_transaction(
        db_session, _ctx(TT.SUPPLIER_RECEIPT, 1, _line("SN-1", quantity=Decimal("2")), location="DEF")
    )

    assert result.error_kind == SerialErrorKind.VALIDATION_FAILED


def test_unmapped_transaction_type_needs_an_explicit_operation(db_session):
    result = services.validate_transaction(db_session, _ctx(999, 1, _line("SN-1")))

    assert result.error_kind == SerialErrorKind.VALIDATION_FAILED
    assert result.error.detail[0]["field"] == "operation"


# -------------------------------------------------------------------
# COMMIT
# -------------------------------------------------------------------


def test_commit_is_idempotent_per_transaction(db_session):
    item = _receive(db_session)
    ctx = _ctx(TT.SALES_INVOICE, 123, _line(item.serial_no))

    first = _run(db_session, ctx)
    second = services.commit_transaction(db_session, ctx)

    assert first.success and not first.noop
    assert second.success and second.noop
    assert len(repository.list_movements_by_transaction(db_session, trans_type=10, trans_no=123)) == 1


def test_commit_without_prior_validation_validates_first(db_session):
    item = _receive(db_session)

    result = services.commit_transaction(db_session, _ctx(TT.CUSTOMER_CREDIT, 1, _line(item.serial_no), location="DEF"))

    assert result.error_kind == SerialErrorKind.INVALID_TRANSITION
    assert item.status == Status.ACTIVE


def test_commit_applies_line_attributes(db_session):
    ctx = _ctx(TT.SUPPLIER_RECEIPT, 1, _line("SN-1", attributes={"warranty": "24m"}), location="DEF")

    assert _run(db_session, ctx).success

    item = repository.get_item_by_serial(db_session, stock_id="TEST001", serial_no="SN-1")
    assert services.get_serial_history(db_session, item.id).attributes == {"warranty": "24m"}


def test_commit_skips_attributes_when_disabled(db_session):
    settings = SerialSettings(enable_attributes=False)
    ctx = _ctx(TT.SUPPLIER_RECEIPT, 1, _line("SN-1", attributes={"warranty": "24m"}), location="DEF")

    assert _run(db_session, ctx, settings).success

    item = repository.get_item_by_serial(db_session, stock_id="TEST001", serial_no="SN-1")
    assert repository.list_attributes_by_serial(db_session, item.id) == []


def test_disabled_tracking_makes_every_call_a_noop(db_session):
    settings = SerialSettings(enable_tracking=False)
    ctx = _ctx(TT.SUPPLIER_RECEIPT, 1, _line("SN-1"), location="DEF")

    validation = services.validate_transaction(db_session, ctx, settings)
    commit = services.commit_transaction(db_session, ctx, settings)
    reverse = services.reverse_transaction(db_session, TT.SUPPLIER_RECEIPT, 1, settings)

    assert validation.noop and commit.noop and reverse.noop
    assert repository.get_item_by_serial(db_session, stock_id="TEST001", serial_no="SN-1") is None


# -------------------------------------------------------------------
# REVERSAL
# -------------------------------------------------------------------


def test_reversing_an_unknown_transaction_is_a_noop(db_session):
    result = services.reverse_transaction(db_session, TT.SALES_INVOICE, 999)

    assert result.success
    assert result.noop


def test_reversal_twice_only_reverses_once(db_session):
    item = _receive(db_session)
    assert _sell(db_session, item).success

    first = services.reverse_transaction(db_session, TT.SALES_INVOICE, 123)
    second = services.reverse_transaction(db_session, TT.SALES_INVOICE, 123)

    assert not first.noop
    assert second.noop
    assert len(repository.list_movements_by_transaction(db_session, trans_type=10, trans_no=123)) == 2


def test_reversal_is_blocked_by_a_later_dependent_transaction(db_session):
    item = _receive(db_session, trans_no=1)
    assert _sell(db_session, item, trans_no=5).success

    blocked = services.reverse_transaction(db_session, TT.SERIAL_ENTRY, 1)

    assert blocked.error_kind == SerialErrorKind.INVALID_TRANSITION
    assert item.status == Status.SOLD

    assert services.reverse_transaction(db_session, TT.SALES_INVOICE, 5).success
    assert services.reverse_transaction(db_session, TT.SERIAL_ENTRY, 1).success
    assert item.status == Status.SCRAPPED
    assert item.location == models.LOCATION_SCRAPPED
    assert services.verify_item(db_session, item.id) == []


def test_reversal_is_blocked_by_later_maintenance(db_session):
    item = _receive(db_session, trans_no=1)
    assert services.log_maintenance(db_session, item_id=item.id).success

    result = services.reverse_transaction(db_session, TT.SERIAL_ENTRY, 1)

    assert result.error_kind == SerialErrorKind.INVALID_TRANSITION


def test_reversal_in_delete_mode_removes_movements(db_session):
    settings = SerialSettings(reversal_mode="delete")
    item = _receive(db_session, trans_no=1)
    assert _sell(db_session, item).success

    result = services.reverse_transaction(db_session, TT.SALES_INVOICE, 123, settings)

    assert result.success
    assert result.movements == []
    assert [event.movement_type for event in result.events] == [Op.REVERSAL]
    assert repository.list_movements_by_transaction(db_session, trans_type=10, trans_no=123) == []
    assert item.status == Status.ACTIVE
    assert item.location == "DEF"
    assert services.verify_item(db_session, item.id) == []


def test_reversing_a_receipt_in_delete_mode_still_retires_the_item(db_session):
    settings = SerialSettings(reversal_mode="delete")
    item = _receive(db_session, trans_no=1)

    result = services.reverse_transaction(db_session, TT.SERIAL_ENTRY, 1, settings)

    assert result.success
    assert [movement.movement_type for movement in result.movements] == [Op.REVERSAL]
    assert item.status == Status.SCRAPPED
    assert repository.get_item_by_serial(db_session, stock_id="TEST001", serial_no="SN123456789") is item
    assert services.verify_item(db_session, item.id) == []


def test_reversed_transaction_can_be_recorded_again(db_session):
    item = _receive(db_session)
    ctx = _ctx(TT.SALES_INVOICE, 123, _line(item.serial_no))
    assert _run(db_session, ctx).success
    assert services.reverse_transaction(db_session, TT.SALES_INVOICE, 123).success

    again = _run(db_session, _ctx(TT.SALES_INVOICE, 123, _line(item.serial_no)))

    assert again.success and not again.noop
    assert item.status == Status.SOLD
    assert services.verify_item(db_session, item.id) == []


def test_reversal_covers_every_line_of_the_transaction(db_session):
    first = _receive(db_session, "SN-1")
    second = _receive(db_session, "SN-2")
    assert _run(db_session, _ctx(TT.SALES_INVOICE, 77, _line("SN-1"), _line("SN-2"))).success

    result = services.reverse_transaction(db_session, TT.SALES_INVOICE, 77)

    assert result.success
    assert len(result.movements) == 2
    assert first.status == second.status == Status.ACTIVE
