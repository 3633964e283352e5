"""Unit tests for StatusReconciler."""

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from basehub.config import DockerConfig
from basehub.errors import RuntimeUnavailableError
from basehub.models import InstanceStatus
from basehub.reconciler import StatusReconciler


class TestStatusReconciler:
    """Tests for merging live container state into views."""

    @pytest.fixture
    def reconciler(self, mock_container_api: AsyncMock) -> StatusReconciler:
        return StatusReconciler(
            DockerConfig(ping_timeout_s=0.1, list_timeout_s=0.1),
            containers=mock_container_api,
        )

    async def test_empty_never_contacts_runtime(
        self,
        reconciler: StatusReconciler,
        mock_container_api: AsyncMock,
    ) -> None:
        views, available = await reconciler.reconcile([])

        assert views == []
        assert available is True
        mock_container_api.ping.assert_not_called()
        mock_container_api.list_by_name.assert_not_called()

    async def test_running_container(
        self,
        reconciler: StatusReconciler,
        mock_container_api: AsyncMock,
        make_record,
    ) -> None:
        mock_container_api.list_by_name.return_value = [{"State": "running"}]
        record = make_record(status=InstanceStatus.STOPPED)

        views, available = await reconciler.reconcile([record])

        assert available is True
        assert views[0].status == InstanceStatus.RUNNING
        assert views[0].status_stale is False
        mock_container_api.list_by_name.assert_called_once_with(f"supabase-studio-{record.id}")

    @pytest.mark.parametrize(
        "containers",
        [[], [{"State": "exited"}], [{"State": "restarting"}]],
    )
    async def test_not_running_is_stopped(
        self,
        reconciler: StatusReconciler,
        mock_container_api: AsyncMock,
        make_record,
        containers: list[dict],
    ) -> None:
        mock_container_api.list_by_name.return_value = containers

        views, _ = await reconciler.reconcile([make_record(status=InstanceStatus.RUNNING)])

        assert views[0].status == InstanceStatus.STOPPED

    async def test_runtime_unreachable_downgrades_running(
        self,
        reconciler: StatusReconciler,
        mock_container_api: AsyncMock,
        make_record,
    ) -> None:
        """Listing still succeeds; unconfirmed running becomes unavailable."""
        mock_container_api.ping.return_value = False
        records = [
            make_record("aaaa1111", "a", status=InstanceStatus.RUNNING),
            make_record("bbbb2222", "b", status=InstanceStatus.STOPPED),
            make_record("cccc3333", "c", status=InstanceStatus.ERROR),
            make_record("dddd4444", "d", status=InstanceStatus.CREATING),
        ]

        views, available = await reconciler.reconcile(records)

        assert available is False
        assert [v.status for v in views] == [
            InstanceStatus.UNAVAILABLE,
            InstanceStatus.STOPPED,
            InstanceStatus.ERROR,
            InstanceStatus.CREATING,
        ]
        assert all(v.status_stale for v in views)
        mock_container_api.list_by_name.assert_not_called()

    async def test_ping_timeout(
        self,
        reconciler: StatusReconciler,
        mock_container_api: AsyncMock,
        make_record,
    ) -> None:
        async def hang() -> bool:
            await asyncio.sleep(5)
            return True

        mock_container_api.ping.side_effect = hang

        views, available = await reconciler.reconcile([make_record()])

        assert available is False
        assert views[0].status_stale is True

    async def test_per_instance_failure_is_isolated(
        self,
        reconciler: StatusReconciler,
        mock_container_api: AsyncMock,
        make_record,
    ) -> None:
        """One failed query does not affect the other instances."""

        async def list_by_name(pattern: str) -> list[dict]:
            if pattern.endswith("aaaa1111"):
                raise httpx.ConnectError("socket closed")
            return [{"State": "running"}]

        mock_container_api.list_by_name.side_effect = list_by_name
        records = [
            make_record("aaaa1111", "a", status=InstanceStatus.STOPPED),
            make_record("bbbb2222", "b", status=InstanceStatus.STOPPED),
        ]

        views, available = await reconciler.reconcile(records)

        assert available is True
        assert views[0].status == InstanceStatus.STOPPED
        assert views[0].status_stale is True
        assert views[1].status == InstanceStatus.RUNNING
        assert views[1].status_stale is False

    async def test_per_instance_timeout(
        self,
        reconciler: StatusReconciler,
        mock_container_api: AsyncMock,
        make_record,
    ) -> None:
        async def hang(pattern: str) -> list[dict]:
            await asyncio.sleep(5)
            return []

        mock_container_api.list_by_name.side_effect = hang

        views, _ = await reconciler.reconcile([make_record(status=InstanceStatus.RUNNING)])

        assert views[0].status == InstanceStatus.RUNNING
        assert views[0].status_stale is True

    async def test_creating_keeps_status(
        self,
        reconciler: StatusReconciler,
        mock_container_api: AsyncMock,
        make_record,
    ) -> None:
        views, _ = await reconciler.reconcile([make_record(status=InstanceStatus.CREATING)])

        assert views[0].status == InstanceStatus.CREATING
        mock_container_api.list_by_name.assert_not_called()


class TestEnsureRuntime:
    """Tests for ensure_runtime."""

    async def test_reachable(self, mock_container_api: AsyncMock) -> None:
        reconciler = StatusReconciler(DockerConfig(), containers=mock_container_api)

        await reconciler.ensure_runtime()

    async def test_unreachable(self, mock_container_api: AsyncMock) -> None:
        mock_container_api.ping.return_value = False
        reconciler = StatusReconciler(DockerConfig(), containers=mock_container_api)

        with pytest.raises(RuntimeUnavailableError, match="not reachable"):
            await reconciler.ensure_runtime()
