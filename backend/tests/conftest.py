"""Shared fixtures building a fully wired pipeline under a temporary root."""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import pytest

from pipeline_fakes import FakeEncoder, make_settings, no_sleep
from vodforge.container import ServiceContainer, build_container
from vodforge.core.locks import KeyedLock


@pytest.fixture
def services():
    """Factory: ``async with services(root) as container: ...``."""

    @asynccontextmanager
    async def _services(
        root: Path,
        encoder=None,
        storage_backend=None,
        http_client=None,
        dispatcher=None,
        **overrides,
    ) -> AsyncIterator[ServiceContainer]:
        container = build_container(
            make_settings(Path(root), **overrides),
            storage_backend=storage_backend,
            encoder=encoder or FakeEncoder(),
            lock=KeyedLock(),
            http_client=http_client,
            dispatcher=dispatcher,
            sleep=no_sleep,
        )
        await container.startup()
        try:
            yield container
        finally:
            await container.shutdown()

    return _services
