"""Shared fixtures data and async helpers for the test-suite."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping

from sqlalchemy.exc import OperationalError

from bedboard.models import RosterView
from bedboard.store import DirectoryStore

SUNRISE_ADMIN = 'admin@sunrise.example'
HARBOR_ADMIN = 'ops@harborview.example'

SAMPLE_PROVIDERS: List[Dict[str, Any]] = [
    {
        'id': 'snf-sunrise',
        'name': 'Sunrise Skilled Nursing',
        'serviceType': 'Skilled Nursing',
        'location': 'Pasadena, CA',
        'description': 'Post-acute rehabilitation and long-term care.',
        'adminEmail': SUNRISE_ADMIN,
        'bedsAvailable': 5,
        'totalBeds': 20,
    },
    {
        'id': 'snf-harbor',
        'name': 'Harbor View Care Center',
        'serviceType': 'Skilled Nursing',
        'location': 'Long Beach, CA',
        'description': 'Short-term rehab with ocean views.',
        'adminEmail': HARBOR_ADMIN,
        'bedsAvailable': 3,
        'totalBeds': 10,
    },
    {
        'id': 'mc-evergreen',
        'name': 'Evergreen Memory Care',
        'serviceType': 'Memory Care',
        'location': 'Glendale, CA',
        'description': 'Secure dementia care community.',
        'bedsAvailable': 9,
        'totalBeds': 9,
    },
    {
        'id': 'pc-lotus',
        'name': 'Lotus Palliative Partners',
        'serviceType': 'Palliative Care',
        'location': 'Burbank, CA',
        'description': 'Comfort-focused care at home.',
        'contact': 'Dana Reyes',
        'lotusRating': {'compassionate': True, 'responsive': True, 'supportive': False, 'professional': True},
    },
]


@dataclass
class FixedClock:
    """Store clock that only moves when a test advances it."""

    now: datetime

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


async def put_all(store: DirectoryStore, documents: Iterable[Mapping[str, Any]]) -> None:
    if not store.is_ready:
        await store.start()
    for doc in documents:
        await store.put(dict(doc))


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError('condition not met before timeout')
        await asyncio.sleep(0.01)


class RenderLog:
    """Collects every roster render pushed by a controller."""

    def __init__(self) -> None:
        self.views: List[RosterView] = []

    async def __call__(self, view: RosterView) -> None:
        self.views.append(view)

    @property
    def latest(self) -> RosterView:
        return self.views[-1]

    def ids(self, index: int = -1) -> List[str]:
        return [card.provider_id for card in self.views[index].cards]


def operational_error() -> OperationalError:
    return OperationalError('SELECT 1', {}, Exception('database is locked'))
