"""
Metrics Module
Pluggable recorders consuming one SyncResult per finalized run.
"""

import json
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TextIO

from jira_sync.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SyncResult:
    """Outcome of a single sync run, as seen by metrics."""
    sync_type: str
    success: bool
    duration: float  # seconds
    projects_synced: int = 0
    issues_synced: int = 0


class MetricsRecorder(ABC):
    """Abstract base class for recorders; subclasses emit a SyncResult somewhere."""

    @abstractmethod
    def record_sync(self, result: SyncResult) -> None:
        """Consume the outcome of one finalized run."""
        pass


class NoopRecorder(MetricsRecorder):
    """Discards all metrics. Used when METRICS_NAMESPACE is empty."""

    def record_sync(self, result: SyncResult) -> None:
        pass


class EMFRecorder(MetricsRecorder):
    """
    Writes one CloudWatch Embedded Metric Format line per run.

    The ``_aws`` block declares the namespace, the ``SyncType`` dimension
    and the four metrics; the metric values sit at the top level of the
    same JSON object so a log agent can extract them without API calls.
    """

    def __init__(self, namespace: str, out: TextIO = None):
        self.namespace = namespace
        self.out = out or sys.stdout

    def build_entry(self, result: SyncResult) -> dict:
        """Build the EMF document for a result."""
        return {
            '_aws': {
                'Timestamp': int(time.time() * 1000),
                'CloudWatchMetrics': [
                    {
                        'Namespace': self.namespace,
                        'Dimensions': [['SyncType']],
                        'Metrics': [
                            {'Name': 'SyncSuccess', 'Unit': 'Count'},
                            {'Name': 'DurationSeconds', 'Unit': 'Seconds'},
                            {'Name': 'IssuesSynced', 'Unit': 'Count'},
                            {'Name': 'ProjectsSynced', 'Unit': 'Count'},
                        ]
                    }
                ]
            },
            'SyncType': result.sync_type,
            'SyncSuccess': 1 if result.success else 0,
            'DurationSeconds': float(result.duration),
            'IssuesSynced': result.issues_synced,
            'ProjectsSynced': result.projects_synced
        }

    def record_sync(self, result: SyncResult) -> None:
        """Emit the EMF line; failures are logged, never raised."""
        try:
            line = json.dumps(self.build_entry(result))
            self.out.write(line + '\n')
            self.out.flush()
        except (TypeError, ValueError, OSError) as e:
            logger.warning(f"Failed to emit sync metrics: {e}")


def create_recorder(namespace: str) -> MetricsRecorder:
    """EMF recorder for a non-empty namespace, no-op otherwise."""
    if namespace:
        logger.info(f"Metrics enabled: namespace={namespace}")
        return EMFRecorder(namespace)
    return NoopRecorder()
