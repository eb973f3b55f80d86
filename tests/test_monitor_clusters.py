"""Tests for the cluster monitor."""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from digital_factory.monitor_clusters import (
    ClusterComparison,
    ClusterMonitor,
    compare_results,
    get_previous_cluster_status,
    online_cluster_ids,
)


T0 = datetime(2024, 3, 1, 12, 30, 15, 250000, tzinfo=timezone.utc)
T1 = datetime(2024, 3, 1, 12, 31, 15, tzinfo=timezone.utc)


def cluster(cid: str, online: bool) -> dict:
    return {"cluster_id": cid, "is_online": online, "friendly_name": cid.upper()}


class TestCompareResults:
    def test_online_ids_keep_order(self) -> None:
        clusters = [cluster("b", True), cluster("a", False), cluster("c", True)]
        assert online_cluster_ids(clusters) == ["b", "c"]

    def test_appeared_and_gone(self) -> None:
        previous = [cluster("a", True), cluster("b", True), cluster("c", False)]
        current = [cluster("a", True), cluster("b", False), cluster("c", True),
                   cluster("d", True)]

        result = compare_results(previous, current, T0)

        assert result.appeared == ["c", "d"]
        assert result.gone == ["b"]
        assert result.online_count == 3
        assert result.offline_count == 1
        assert result.date_time == "2024-03-01T12:30:15.250Z"

    def test_removed_cluster_counts_as_gone(self) -> None:
        result = compare_results([cluster("a", True)], [], T0)
        assert result.gone == ["a"]
        assert result.online_count == 0
        assert result.offline_count == 0

    def test_no_changes(self) -> None:
        clusters = [cluster("a", True), cluster("b", False)]
        result = compare_results(clusters, clusters, T0)
        assert result.appeared == [] and result.gone == []

    def test_csv_line(self) -> None:
        comparison = ClusterComparison(
            date_time="2024-03-01T12:30:15.250Z",
            appeared=["c", "d"],
            gone=[],
            online_count=3,
            offline_count=1,
        )
        assert comparison.csv_line() == "2024-03-01T12:30:15.250Z;c,d;;3;1"
        assert comparison.csv_line(separator="|").startswith("2024")


class TestPreviousStatus:
    def test_creates_missing_dir(self, tmp_path) -> None:
        status_dir = tmp_path / "logs"
        assert get_previous_cluster_status(status_dir) is None
        assert status_dir.is_dir()

    def test_empty_dir(self, tmp_path) -> None:
        (tmp_path / "cluster-monitoring.csv").write_text("x\n")
        assert get_previous_cluster_status(tmp_path) is None

    def test_picks_latest_snapshot(self, tmp_path) -> None:
        old = "2024-03-01T10-00-00.000Z-clusters.json"
        new = "2024-03-01T11-00-00.000Z-clusters.json"
        (tmp_path / old).write_text(json.dumps([cluster("old", True)]))
        (tmp_path / new).write_text(json.dumps([cluster("new", True)]))

        assert get_previous_cluster_status(tmp_path) == [cluster("new", True)]


class TestClusterMonitor:
    @pytest.fixture
    def client(self) -> MagicMock:
        client = MagicMock()
        client.get_clusters.side_effect = [
            [cluster("a", True), cluster("b", False)],
            [cluster("a", False), cluster("b", True)],
        ]
        return client

    def test_first_iteration_only_writes_snapshot(
        self, client: MagicMock, tmp_path
    ) -> None:
        monitor = ClusterMonitor(client, status_dir=tmp_path / "logs")

        assert monitor.run_iteration(now=T0) is None

        snapshot = tmp_path / "logs" / "2024-03-01T12-30-15.250Z-clusters.json"
        assert json.loads(snapshot.read_text()) == [
            cluster("a", True),
            cluster("b", False),
        ]
        assert not (tmp_path / "logs" / "cluster-monitoring.csv").exists()

    def test_second_iteration_appends_csv(
        self, client: MagicMock, tmp_path
    ) -> None:
        monitor = ClusterMonitor(client, status_dir=tmp_path)
        monitor.run_iteration(now=T0)

        comparison = monitor.run_iteration(now=T1)

        assert comparison.appeared == ["b"]
        assert comparison.gone == ["a"]
        csv = (tmp_path / "cluster-monitoring.csv").read_text()
        assert csv == "2024-03-01T12:31:15.000Z;b;a;1;1\n"

    def test_resumes_from_existing_snapshot(self, tmp_path) -> None:
        (tmp_path / "2024-01-01T00-00-00.000Z-clusters.json").write_text(
            json.dumps([cluster("a", True)])
        )
        client = MagicMock()
        client.get_clusters.return_value = [cluster("a", True), cluster("z", True)]
        monitor = ClusterMonitor(
            client,
            status_dir=tmp_path,
            comparison_file=tmp_path / "out.csv",
        )

        comparison = monitor.run_iteration(now=T1)

        assert comparison.appeared == ["z"]
        assert (tmp_path / "out.csv").read_text().startswith("2024-03-01T12:31")

    def test_start_once(self, client: MagicMock, tmp_path) -> None:
        monitor = ClusterMonitor(client, status_dir=tmp_path, once=True)

        monitor.start()

        assert client.get_clusters.call_count == 1
        assert monitor.running is False

    def test_start_stops_on_interrupt(
        self, client: MagicMock, tmp_path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def interrupt(_seconds):
            raise KeyboardInterrupt

        monkeypatch.setattr("digital_factory.monitor_clusters.time.sleep", interrupt)
        monitor = ClusterMonitor(client, status_dir=tmp_path, interval=5)

        monitor.start()

        assert client.get_clusters.call_count == 1
        assert monitor.running is False

    def test_start_reraises_errors(self, tmp_path) -> None:
        client = MagicMock()
        client.get_clusters.side_effect = RuntimeError("api down")
        monitor = ClusterMonitor(client, status_dir=tmp_path)

        with pytest.raises(RuntimeError, match="api down"):
            monitor.start()
