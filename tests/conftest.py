"""Shared fixtures wiring the in-memory fakes into the services."""

import pytest

from fakes import (
    FakeFetcher,
    FakeInspector,
    FakeNotifier,
    FakeRepository,
    FakeStorage,
    FakeSubscriptions,
    FakeTranscoder,
)
from pitchstream.modules.pitch.service import PitchService


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def repository() -> FakeRepository:
    return FakeRepository()


@pytest.fixture
def inspector() -> FakeInspector:
    return FakeInspector()


@pytest.fixture
def subscriptions() -> FakeSubscriptions:
    return FakeSubscriptions()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def fetcher(storage) -> FakeFetcher:
    return FakeFetcher(storage)


@pytest.fixture
def transcoder(storage) -> FakeTranscoder:
    return FakeTranscoder(storage)


@pytest.fixture
def enqueued() -> list:
    return []


@pytest.fixture
def pitch_service(repository, storage, subscriptions, notifier, inspector, enqueued) -> PitchService:
    return PitchService(
        repository=repository,
        storage=storage,
        subscriptions=subscriptions,
        notifier=notifier,
        enqueue=enqueued.append,
        inspector=inspector,
    )
