import asyncio

import pytest

from bedboard.errors import (
    AvailableExceedsTotal,
    NegativeValue,
    NotFound,
    StoreUnavailable,
    Unauthorized,
    UnsupportedServiceType,
)
from bedboard.models import Capability, EditDraft, Provider
from bedboard.workflow import BedCountWorkflow, adjust_available, bed_preview, validate_bed_counts

from tests.support import SAMPLE_PROVIDERS, operational_error, put_all

SUNRISE = Capability.can_edit('snf-sunrise')


def _draft(available, total):
    provider = Provider.model_validate(SAMPLE_PROVIDERS[0])
    return EditDraft(provider=provider, beds_available=available, total_beds=total)


def test_validate_allows_equality():
    validate_bed_counts(20, 20)
    validate_bed_counts(0, 0)


def test_validate_rejects_negative_before_ordering():
    with pytest.raises(NegativeValue):
        validate_bed_counts(-1, 5)
    with pytest.raises(NegativeValue):
        validate_bed_counts(3, -1)


def test_validate_rejects_available_above_total():
    with pytest.raises(AvailableExceedsTotal) as excinfo:
        validate_bed_counts(21, 20)
    assert excinfo.value.code == 'available_exceeds_total'
    assert excinfo.value.retryable is False


def test_stepper_clamps_to_bounds():
    assert adjust_available(_draft(5, 20), 1).beds_available == 6
    assert adjust_available(_draft(0, 20), -1).beds_available == 0
    assert adjust_available(_draft(20, 20), 1).beds_available == 20
    # total is never touched by the stepper
    assert adjust_available(_draft(4, 3), 1).total_beds == 3
    assert adjust_available(_draft(4, 3), 1).beds_available == 3


def test_preview_tracks_occupancy():
    preview = bed_preview(5, 20)
    assert preview.occupied == 15
    assert preview.occupied_percent == pytest.approx(75.0)
    assert bed_preview(0, 0).occupied_percent == 0


def test_submit_writes_counts_and_server_timestamps(store, clock):
    async def scenario():
        await put_all(store, SAMPLE_PROVIDERS)
        updated = await BedCountWorkflow(store).submit(SUNRISE, 'snf-sunrise', 20, 20)
        stored = await store.get('snf-sunrise')
        return updated, stored

    updated, stored = asyncio.run(scenario())
    assert updated.beds_available == 20
    assert stored.beds_available == 20
    assert stored.total_beds == 20
    assert stored.last_bed_update == clock.now
    assert stored.updated_at == clock.now


def test_submit_above_total_is_rejected_without_write(store):
    async def scenario():
        await put_all(store, SAMPLE_PROVIDERS)
        with pytest.raises(AvailableExceedsTotal):
            await BedCountWorkflow(store).submit(SUNRISE, 'snf-sunrise', 21, 20)
        return await store.get('snf-sunrise')

    stored = asyncio.run(scenario())
    assert stored.beds_available == 5
    assert stored.last_bed_update is None


def test_submit_negative_is_rejected(store):
    async def scenario():
        await put_all(store, SAMPLE_PROVIDERS)
        with pytest.raises(NegativeValue):
            await BedCountWorkflow(store).submit(SUNRISE, 'snf-sunrise', -1, 5)

    asyncio.run(scenario())


def test_capability_is_checked_first(store):
    async def scenario():
        await put_all(store, SAMPLE_PROVIDERS)
        workflow = BedCountWorkflow(store)
        # invalid counts still report the authorization failure
        with pytest.raises(Unauthorized):
            await workflow.submit(SUNRISE, 'snf-harbor', -5, 1)
        with pytest.raises(Unauthorized):
            await workflow.submit(Capability.none(), 'snf-sunrise', 1, 2)
        return await store.get('snf-harbor')

    harbor = asyncio.run(scenario())
    assert harbor.beds_available == 3


def test_service_type_is_checked_before_counts(store):
    async def scenario():
        await put_all(store, SAMPLE_PROVIDERS)
        with pytest.raises(UnsupportedServiceType):
            await BedCountWorkflow(store).submit(Capability.can_edit('mc-evergreen'), 'mc-evergreen', -1, 5)

    asyncio.run(scenario())


def test_missing_provider_reports_not_found(store):
    async def scenario():
        await store.start()
        with pytest.raises(NotFound):
            await BedCountWorkflow(store).submit(Capability.can_edit('gone'), 'gone', 1, 2)

    asyncio.run(scenario())


def test_repeated_submit_is_idempotent(store, clock):
    async def scenario():
        await put_all(store, SAMPLE_PROVIDERS)
        workflow = BedCountWorkflow(store)
        first = await workflow.submit(SUNRISE, 'snf-sunrise', 7, 20)
        clock.advance(60)
        second = await workflow.submit(SUNRISE, 'snf-sunrise', 7, 20)
        return first, second

    first, second = asyncio.run(scenario())
    assert (first.beds_available, first.total_beds) == (second.beds_available, second.total_beds)
    assert second.last_bed_update > first.last_bed_update


def test_write_failure_is_retryable(store, monkeypatch):
    async def scenario():
        await put_all(store, SAMPLE_PROVIDERS)

        def _fail(*args, **kwargs):
            raise operational_error()

        monkeypatch.setattr(store, '_update_sync', _fail)
        with pytest.raises(StoreUnavailable) as excinfo:
            await BedCountWorkflow(store).submit(SUNRISE, 'snf-sunrise', 4, 20)
        return excinfo.value

    error = asyncio.run(scenario())
    assert error.retryable is True
    assert error.to_payload()['code'] == 'store_unavailable'
