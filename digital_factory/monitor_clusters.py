#!/usr/bin/env python3
"""
Cluster monitor - periodically polls the Digital Factory clusters endpoint.

Every iteration writes the raw cluster list to a timestamped JSON file and,
when a previous snapshot exists, appends one CSV row describing which clusters
came online and which went offline since then.
"""

import argparse
import json
import logging
import os
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import requests
from dotenv import load_dotenv

from digital_factory.authorize import build_token_manager
from digital_factory.digital_factory_client import DigitalFactoryClient
from digital_factory.oauth import SignInError


logger = logging.getLogger('digital-factory')

DEFAULT_STATUS_DIR = 'cluster-monitoring-logs'
COMPARISON_FILE_NAME = 'cluster-monitoring.csv'
SNAPSHOT_SUFFIX = '-clusters.json'


def _iso_timestamp(dt):
    """ISO 8601 in UTC with millisecond precision and a trailing Z."""
    dt = dt.astimezone(timezone.utc)
    return dt.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


@dataclass
class ClusterComparison:
    """Difference between two successive cluster snapshots."""

    date_time: str
    appeared: list = field(default_factory=list)
    gone: list = field(default_factory=list)
    online_count: int = 0
    offline_count: int = 0

    def csv_line(self, separator=';'):
        fields = [
            self.date_time,
            ','.join(self.appeared),
            ','.join(self.gone),
            str(self.online_count),
            str(self.offline_count),
        ]
        return separator.join(fields)

    def to_dict(self):
        return {
            'dateTime': self.date_time,
            'appeared': list(self.appeared),
            'gone': list(self.gone),
            'onlineCount': self.online_count,
            'offlineCount': self.offline_count,
        }


def online_cluster_ids(clusters):
    """Ordered ids of the clusters that report is_online."""
    ids = []
    for cluster in clusters or []:
        if cluster.get('is_online') and cluster.get('cluster_id') not in ids:
            ids.append(cluster.get('cluster_id'))
    return ids


def compare_results(previous, current, date_time):
    """Compare two cluster lists taken at different times."""
    previous_online = online_cluster_ids(previous)
    current_online = online_cluster_ids(current)
    previous_set = set(previous_online)
    current_set = set(current_online)
    return ClusterComparison(
        date_time=_iso_timestamp(date_time),
        appeared=[cid for cid in current_online if cid not in previous_set],
        gone=[cid for cid in previous_online if cid not in current_set],
        online_count=len(current_online),
        offline_count=len(current or []) - len(current_online),
    )


def get_previous_cluster_status(status_dir):
    """Load the most recent snapshot from status_dir.

    Creates the directory when it does not exist yet (returning None).
    """
    status_dir = Path(status_dir)
    if not status_dir.exists():
        status_dir.mkdir(parents=True, exist_ok=True)
        return None
    snapshots = sorted(status_dir.glob('*.json'), key=lambda p: p.name, reverse=True)
    if not snapshots:
        return None
    return json.loads(snapshots[0].read_text(encoding='utf-8'))


class ClusterMonitor:
    """Polling loop that snapshots and diffs the cluster list."""

    def __init__(
        self,
        client,
        status_dir=DEFAULT_STATUS_DIR,
        comparison_file=None,
        interval=60,
        once=False,
    ):
        """Initialize the monitor.

        Args:
            client: DigitalFactoryClient with a valid token
            status_dir: Directory receiving the JSON snapshots
            comparison_file: CSV file receiving one row per comparison
                (default: cluster-monitoring.csv inside status_dir)
            interval: Seconds between polls (default: 60)
            once: Poll a single time and return
        """
        self.client = client
        self.status_dir = Path(status_dir)
        self.comparison_file = Path(comparison_file or (self.status_dir / COMPARISON_FILE_NAME))
        self.interval = interval
        self.once = once
        self.running = False
        self.previous = get_previous_cluster_status(self.status_dir)
        if self.previous is not None:
            logger.info(f"Loaded previous snapshot with {len(self.previous)} clusters")

    def run_iteration(self, now=None):
        """Poll once; returns the comparison, or None for the first snapshot."""
        logger.info("Retrieving clusters...")
        clusters = self.client.get_clusters()
        now = now or datetime.now(timezone.utc)

        snapshot = self.status_dir / f"{_iso_timestamp(now).replace(':', '-')}{SNAPSHOT_SUFFIX}"
        snapshot.write_text(json.dumps(clusters, indent=4), encoding='utf-8')
        logger.info(f"Found {len(clusters)} clusters")

        comparison = None
        if self.previous is not None:
            comparison = compare_results(self.previous, clusters, now)
            with self.comparison_file.open('a', encoding='utf-8') as fh:
                fh.write(comparison.csv_line() + '\n')
            logger.info(f"Comparison resulted in {json.dumps(comparison.to_dict(), indent=4)}")

        self.previous = clusters
        return comparison

    def start(self):
        """Start the monitor."""
        logger.info("Starting cluster monitor...")
        self.comparison_file.parent.mkdir(parents=True, exist_ok=True)
        self.running = True
        iteration = 0

        try:
            while self.running:
                iteration += 1
                logger.info(f"Monitor iteration {iteration}")
                self.run_iteration()

                if self.once:
                    logger.info("--once set; exiting after one iteration")
                    self.running = False
                    break

                logger.info(f"Sleeping for {self.interval} seconds...")
                time.sleep(self.interval)

        except KeyboardInterrupt:
            logger.info("Received interrupt signal, shutting down...")
            self.running = False
        except Exception as e:
            logger.error(f"Monitor error: {e}")
            raise

    def stop(self):
        """Stop the monitor."""
        logger.info("Stopping monitor...")
        self.running = False


def _configure_logging(log_file):
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file, encoding='utf-8'),
            logging.StreamHandler(sys.stdout)
        ]
    )


def main(argv=None):
    """Main entry point for the cluster monitor."""
    parser = argparse.ArgumentParser(description="Monitor Digital Factory clusters")
    parser.add_argument('--once', action='store_true', help='Poll one time and exit')
    parser.add_argument(
        '--interval',
        type=int,
        default=None,
        help='Seconds between polls (overrides INTERVAL env var, default 60)'
    )
    parser.add_argument(
        '--status-dir',
        default=None,
        help=f'Directory for JSON snapshots (default: STATUS_DIR env or {DEFAULT_STATUS_DIR})'
    )
    parser.add_argument(
        '--comparison-file',
        default=None,
        help=f'CSV file for comparisons (default: <status-dir>/{COMPARISON_FILE_NAME})'
    )
    parser.add_argument(
        '--log-file',
        default='cluster_monitor.log',
        help='Log file path (default: cluster_monitor.log)'
    )
    parser.add_argument(
        '--use-cached-token',
        action='store_true',
        help='Reuse (or refresh) the cached token instead of signing in again'
    )
    parser.add_argument(
        '--open-browser',
        action='store_true',
        help='Open the sign-in URL in the default browser'
    )
    parser.add_argument(
        '--state-file',
        default=None,
        help='Path to state JSON file (default: .digital_factory_state.json in repo root)'
    )
    args = parser.parse_args(argv)

    load_dotenv()
    _configure_logging(args.log_file)

    interval = args.interval if args.interval is not None else int(os.getenv('INTERVAL', '60'))
    status_dir = args.status_dir or os.getenv('STATUS_DIR') or DEFAULT_STATUS_DIR
    timeout_s = int(os.getenv('DIGITAL_FACTORY_TIMEOUT_S', '60'))
    retries = int(os.getenv('DIGITAL_FACTORY_RETRIES', '2'))

    try:
        manager = build_token_manager(timeout_s, args.state_file)
    except SignInError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(2)

    try:
        manager.ensure_token(use_cache=args.use_cached_token, open_browser=args.open_browser)
    except (requests.RequestException, RuntimeError) as e:
        logger.error(f"Sign in failed: {e}")
        sys.exit(1)
    print("Sign in completed.\n")

    try:
        client = DigitalFactoryClient(
            timeout_s=timeout_s,
            retries=retries,
            token_provider=manager.access_token,
        )
        monitor = ClusterMonitor(
            client,
            status_dir=status_dir,
            comparison_file=args.comparison_file,
            interval=interval,
            once=args.once,
        )
        monitor.start()
    except Exception as e:
        logger.error(f"Cluster monitor failed: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
