"""
Unit tests for façade wiring that needs no database.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from kiln.config import Settings
from kiln.core import Kiln
from kiln.db import connection


class TestConnect:
    """Tests for building a façade from settings."""

    @pytest.mark.asyncio
    async def test_uses_given_settings(self, monkeypatch: pytest.MonkeyPatch):
        """The client, database and collection come from the settings passed in."""
        client = MagicMock()
        client.admin.command = AsyncMock()
        create_client = MagicMock(return_value=client)
        monkeypatch.setattr(connection, "_client", None)
        monkeypatch.setattr(connection, "create_client", create_client)
        monkeypatch.setattr(Kiln, "start", AsyncMock())
        settings = Settings(
            mongodb_uri="mongodb://elsewhere:27017",
            mongodb_database="other",
            mongodb_collection="jobs",
        )

        kiln = await Kiln.connect(settings)

        create_client.assert_called_once_with("mongodb://elsewhere:27017")
        client.__getitem__.assert_called_with("other")
        database = client.__getitem__.return_value
        database.__getitem__.assert_called_with("jobs")
        assert kiln.queue.collection is database.__getitem__.return_value
        assert kiln.settings is settings


class TestGetDistributor:
    """Tests for sharing distributors between pools."""

    @pytest.fixture
    def kiln(self, test_settings: Settings) -> Kiln:
        return Kiln(MagicMock(), test_settings)

    def test_same_types_share_a_distributor(self, kiln: Kiln):
        """Pools claiming the same types use one distributor."""
        first = kiln.get_distributor(["echo", "adding"], capacity=2)
        second = kiln.get_distributor(["adding", "echo"], capacity=2)

        assert first is second

    def test_reuse_grows_capacity(self, kiln: Kiln):
        """A second pool asking for more capacity enlarges the shared distributor."""
        distributor = kiln.get_distributor(["echo"], capacity=2)

        kiln.get_distributor(["echo"], capacity=8)
        kiln.get_distributor(["echo"], capacity=4)

        assert distributor.capacity == 8
