import asyncio

import pytest

from bedboard.authz import AuthorizationResolver, Identity
from bedboard.controller import EditorState, LiveRosterController
from bedboard.errors import (
    AvailableExceedsTotal,
    EditorStateError,
    NegativeValue,
    StoreUnavailable,
    Unauthorized,
    Unimplemented,
)
from bedboard.models import Capability

from tests.support import (
    HARBOR_ADMIN,
    SAMPLE_PROVIDERS,
    SUNRISE_ADMIN,
    RenderLog,
    operational_error,
    put_all,
    wait_for,
)


def _controller(store, email=None, renders=None):
    identity = Identity(subject='user', email=email) if email else Identity.anonymous()
    return LiveRosterController(
        store,
        AuthorizationResolver(store),
        identity,
        on_render=renders,
    )


def test_initialize_waits_for_store_readiness(store):
    renders = RenderLog()

    async def scenario():
        controller = _controller(store, renders=renders)
        init = asyncio.create_task(controller.initialize())
        await asyncio.sleep(0.05)
        assert not init.done()
        await put_all(store, SAMPLE_PROVIDERS)
        await init
        await wait_for(lambda: renders.views and len(renders.latest.cards) == len(SAMPLE_PROVIDERS))
        await controller.close()
        return controller

    controller = asyncio.run(scenario())
    assert controller.capability == Capability.none()
    assert controller.category == 'All'
    assert renders.latest.banner_visible is False


def test_initialize_only_once(store):
    async def scenario():
        await put_all(store, SAMPLE_PROVIDERS)
        controller = _controller(store)
        await controller.initialize()
        with pytest.raises(RuntimeError):
            await controller.initialize()
        await controller.close()

    asyncio.run(scenario())


def test_remote_change_replaces_the_view(store):
    renders = RenderLog()

    async def scenario():
        await put_all(store, SAMPLE_PROVIDERS)
        controller = _controller(store, renders=renders)
        await controller.initialize()
        await wait_for(lambda: len(renders.views) == 1)
        await store.update_fields('snf-harbor', {'bedsAvailable': 0})
        await wait_for(lambda: len(renders.views) == 2)
        await controller.close()

    asyncio.run(scenario())
    before, after = renders.views
    assert after.version == before.version + 1
    harbor = {card.provider_id: card for card in after.cards}['snf-harbor']
    assert harbor.beds.available == 0
    assert harbor.beds.low is True
    assert after.aggregate.beds_available_total == 5


def test_rapid_filter_switch_leaves_one_subscription_on_latest_filter(store):
    renders = RenderLog()

    async def scenario():
        await put_all(store, SAMPLE_PROVIDERS)
        controller = _controller(store, renders=renders)
        await controller.initialize()
        await asyncio.gather(
            controller.filter_by_category('Skilled Nursing'),
            controller.filter_by_category('All'),
        )
        await wait_for(lambda: renders.latest.category == 'All' and renders.views[-1].version > 1)
        await asyncio.sleep(0.05)
        count = store.subscription_count
        await controller.close()
        return controller, count

    controller, count = asyncio.run(scenario())
    assert count == 1
    assert controller.category == 'All'
    assert renders.latest.category == 'All'
    assert len(renders.latest.cards) == len(SAMPLE_PROVIDERS)
    assert store.subscription_count == 0


def test_skilled_nursing_filter_sorts_and_shows_banner(store):
    renders = RenderLog()

    async def scenario():
        await put_all(store, SAMPLE_PROVIDERS)
        controller = _controller(store, renders=renders)
        await controller.initialize()
        visible = await controller.filter_by_category('Skilled Nursing')
        await wait_for(lambda: renders.views and renders.latest.category == 'Skilled Nursing')
        await controller.close()
        return visible

    assert asyncio.run(scenario()) is True
    assert renders.ids() == ['snf-sunrise', 'snf-harbor']
    assert renders.latest.banner_visible is True
    assert renders.latest.aggregate.to_payload() == {'bedsAvailable': 8, 'facilities': 2, 'totalBeds': 30}


def test_search_is_visual_only(store):
    renders = RenderLog()

    async def scenario():
        await put_all(store, SAMPLE_PROVIDERS)
        controller = _controller(store, renders=renders)
        await controller.initialize()
        await wait_for(lambda: len(renders.views) == 1)
        view = await controller.search_providers('burbank')
        snapshot = controller.snapshot
        await controller.close()
        return view, snapshot

    view, snapshot = asyncio.run(scenario())
    assert [card.provider_id for card in view.cards if card.visible] == ['pc-lotus']
    assert len(view.cards) == len(SAMPLE_PROVIDERS)
    assert len(snapshot) == len(SAMPLE_PROVIDERS)


def test_editor_refused_without_capability(store):
    async def scenario():
        await put_all(store, SAMPLE_PROVIDERS)
        controller = _controller(store, email='visitor@example.com')
        await controller.initialize()
        writes = []
        original = store.update_fields

        async def _spy(*args, **kwargs):  # pragma: no cover - must not be called
            writes.append(args)
            return await original(*args, **kwargs)

        store.update_fields = _spy
        for provider_id in ('snf-sunrise', 'snf-harbor', 'mc-evergreen'):
            with pytest.raises(Unauthorized):
                await controller.open_editor(provider_id)
        await controller.close()
        return controller, writes

    controller, writes = asyncio.run(scenario())
    assert controller.capability == Capability.none()
    assert controller.editor_state is EditorState.CLOSED
    assert writes == []


def test_edit_affordance_follows_capability(store):
    renders = RenderLog()

    async def scenario():
        await put_all(store, SAMPLE_PROVIDERS)
        controller = _controller(store, email=SUNRISE_ADMIN, renders=renders)
        await controller.initialize()
        await wait_for(lambda: len(renders.views) == 1)
        await controller.close()

    asyncio.run(scenario())
    editable = [card.provider_id for card in renders.latest.cards if card.beds and card.beds.editable]
    assert editable == ['snf-sunrise']


def test_submit_round_trips_through_subscription(store):
    renders = RenderLog()

    async def scenario():
        await put_all(store, SAMPLE_PROVIDERS)
        controller = _controller(store, email=HARBOR_ADMIN, renders=renders)
        await controller.initialize()
        await wait_for(lambda: len(renders.views) == 1)

        draft = await controller.open_editor('snf-harbor')
        assert (draft.beds_available, draft.total_beds) == (3, 10)
        assert controller.editor_state is EditorState.OPEN
        controller.adjust_draft(1)
        controller.adjust_draft(1)
        preview = controller.preview
        assert (preview.available, preview.occupied) == (5, 5)
        assert preview.occupied_percent == pytest.approx(50.0)

        await controller.submit_editor('snf-harbor')
        assert controller.editor_state is EditorState.CLOSED
        assert controller.draft is None
        await wait_for(lambda: len(renders.views) == 2)
        await controller.close()

    asyncio.run(scenario())
    harbor = {card.provider_id: card for card in renders.latest.cards}['snf-harbor']
    assert harbor.beds.available == 5
    assert harbor.beds.editable is True


def test_validation_failure_keeps_draft_open(store):
    async def scenario():
        await put_all(store, SAMPLE_PROVIDERS)
        controller = _controller(store, email=HARBOR_ADMIN)
        await controller.initialize()
        await controller.open_editor('snf-harbor')
        controller.set_draft(11, 10)
        with pytest.raises(AvailableExceedsTotal):
            await controller.submit_editor('snf-harbor')
        assert controller.editor_state is EditorState.OPEN
        payload = controller.editor_payload()
        assert payload['error']['code'] == 'available_exceeds_total'
        controller.set_draft(-1, 10)
        with pytest.raises(NegativeValue):
            await controller.submit_editor('snf-harbor')
        controller.set_draft(10, 10)
        await controller.submit_editor('snf-harbor')
        stored = await store.get('snf-harbor')
        await controller.close()
        return stored

    stored = asyncio.run(scenario())
    assert (stored.beds_available, stored.total_beds) == (10, 10)


def test_write_failure_returns_to_open_for_manual_retry(store, monkeypatch):
    async def scenario():
        await put_all(store, SAMPLE_PROVIDERS)
        controller = _controller(store, email=HARBOR_ADMIN)
        await controller.initialize()
        await controller.open_editor('snf-harbor')
        controller.set_draft(2, 10)
        original = store._update_sync

        def _fail(*args):
            raise operational_error()

        monkeypatch.setattr(store, '_update_sync', _fail)
        with pytest.raises(StoreUnavailable) as excinfo:
            await controller.submit_editor('snf-harbor')
        assert excinfo.value.retryable
        assert controller.editor_state is EditorState.OPEN
        monkeypatch.setattr(store, '_update_sync', original)
        await controller.submit_editor('snf-harbor')
        stored = await store.get('snf-harbor')
        await controller.close()
        return stored

    assert asyncio.run(scenario()).beds_available == 2


def test_opening_editor_replaces_previous_draft(store):
    async def scenario():
        await put_all(store, SAMPLE_PROVIDERS)
        controller = _controller(store, email=HARBOR_ADMIN)
        await controller.initialize()
        await controller.open_editor('snf-harbor')
        controller.adjust_draft(-1)
        draft = await controller.open_editor('snf-harbor')
        await controller.close()
        return draft

    draft = asyncio.run(scenario())
    assert draft.beds_available == 3


def test_editor_commands_require_open_editor(store):
    async def scenario():
        await put_all(store, SAMPLE_PROVIDERS)
        controller = _controller(store, email=HARBOR_ADMIN)
        await controller.initialize()
        with pytest.raises(EditorStateError):
            controller.adjust_draft(1)
        with pytest.raises(EditorStateError):
            await controller.submit_editor('snf-harbor')
        await controller.open_editor('snf-harbor')
        controller.close_editor()
        assert controller.editor_state is EditorState.CLOSED
        assert controller.editor_payload() == {'state': 'closed'}
        await controller.close()

    asyncio.run(scenario())


def test_subscription_failure_renders_error_view(store, monkeypatch):
    renders = RenderLog()

    async def scenario():
        await put_all(store, SAMPLE_PROVIDERS)

        def _fail():
            raise operational_error()

        monkeypatch.setattr(store, '_load_all_sync', _fail)
        controller = _controller(store, renders=renders)
        await controller.initialize()
        await wait_for(lambda: len(renders.views) == 1)
        await controller.close()

    asyncio.run(scenario())
    assert renders.latest.error['code'] == 'store_unavailable'
    assert renders.latest.cards == ()


def test_reviews_are_not_yet_available(store):
    controller = _controller(store)
    with pytest.raises(Unimplemented) as excinfo:
        controller.view_reviews('snf-sunrise')
    assert 'coming soon' in excinfo.value.message
    with pytest.raises(Unimplemented):
        controller.leave_review('snf-sunrise')


def test_submit_for_another_provider_is_unauthorized(store):
    async def scenario():
        await put_all(store, SAMPLE_PROVIDERS)
        owner = _controller(store, email=SUNRISE_ADMIN)
        await owner.initialize()
        await owner.open_editor('snf-sunrise')
        with pytest.raises(Unauthorized):
            await owner.submit_editor('snf-harbor')
        still_open = owner.editor_state

        visitor = _controller(store, email='visitor@example.com')
        await visitor.initialize()
        with pytest.raises(Unauthorized):
            await visitor.submit_editor('snf-sunrise')

        harbor = await store.get('snf-harbor')
        await owner.close()
        await visitor.close()
        return still_open, harbor

    still_open, harbor = asyncio.run(scenario())
    assert still_open is EditorState.OPEN
    assert harbor.beds_available == 3


def test_search_publishes_a_new_version(store):
    renders = RenderLog()

    async def scenario():
        await put_all(store, SAMPLE_PROVIDERS)
        controller = _controller(store, renders=renders)
        await controller.initialize()
        await wait_for(lambda: len(renders.views) == 1)
        await controller.search_providers('glendale')
        await controller.search_providers('')
        await controller.close()

    asyncio.run(scenario())
    versions = [view.version for view in renders.views]
    assert len(versions) == 3
    assert len(set(versions)) == 3
    assert versions == sorted(versions)
