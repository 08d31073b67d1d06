"""
FTP history reconstruction.

Peloton does not expose an FTP history endpoint. Each FTP test workout
carries `ftp_info.ftp_workout_id`, the id of the test that set the FTP
used during it, so the history is a backward-linked chain rooted at the
user's `cycling_ftp_workout_id`. We walk it one workout at a time.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterator, List, Optional

from core.config import settings
from services.peloton_client import PelotonAuthError, PelotonClient, PelotonError

logger = logging.getLogger(__name__)

# FTP = 95% of 20-minute average power
FTP_FACTOR = 0.95


@dataclass
class FtpTestResult:
    date: Optional[datetime]  # None when Peloton omits created_at
    workout_id: str
    ride_title: Optional[str]
    avg_output: Optional[float]
    calculated_ftp: Optional[int]
    baseline_ftp: int
    source: Optional[str]


def calculate_ftp(avg_output: Optional[float]) -> Optional[int]:
    if avg_output is None:
        return None
    return int(round(avg_output * FTP_FACTOR))


def _avg_output(perf: dict) -> Optional[float]:
    for summary in perf.get("average_summaries") or []:
        if summary.get("slug") == "avg_output" and summary.get("value") is not None:
            return float(summary["value"])
    return None


def _to_result(workout: dict, avg_output: Optional[float]) -> FtpTestResult:
    ftp_info = workout.get("ftp_info") or {}
    ride = workout.get("ride") or {}
    created_at = workout.get("created_at")
    if not created_at:
        logger.warning(f"FTP workout {workout.get('id')} has no created_at")
    return FtpTestResult(
        date=datetime.fromtimestamp(created_at, tz=timezone.utc) if created_at else None,
        workout_id=workout.get("id"),
        ride_title=ride.get("title"),
        avg_output=avg_output,
        calculated_ftp=calculate_ftp(avg_output),
        baseline_ftp=ftp_info.get("ftp") or 0,
        source=ftp_info.get("ftp_source"),
    )


def walk_ftp_chain(
    client: PelotonClient,
    start_workout_id: Optional[str],
    max_hops: Optional[int] = None,
    deadline: Optional[float] = None,
) -> Iterator[FtpTestResult]:
    """
    Yield FTP test results from most recent to oldest.

    Stops when the predecessor pointer is empty, points at an already
    visited workout, `max_hops` results were produced, or the monotonic
    `deadline` has passed. A missing performance graph yields a result with
    avg_output/calculated_ftp = None. A non-auth failure fetching a workout
    ends the walk; PelotonAuthError propagates so the caller can refresh.
    """
    if max_hops is None:
        max_hops = settings.FTP_HISTORY_MAX_HOPS
    visited = set()
    workout_id = start_workout_id
    hops = 0

    while workout_id and hops < max_hops:
        if deadline is not None and time.monotonic() >= deadline:
            logger.warning(f"FTP chain walk stopped at deadline after {hops} results")
            return

        try:
            workout = client.get_workout(workout_id)
        except PelotonAuthError:
            raise
        except PelotonError as e:
            logger.warning(f"FTP chain walk stopped at workout {workout_id}: {e}")
            return

        avg_output = None
        try:
            avg_output = _avg_output(client.get_workout_performance_graph(workout_id))
        except PelotonAuthError:
            raise
        except PelotonError as e:
            # Performance graph is not available for every workout
            logger.debug(f"No performance graph for workout {workout_id}: {e}")

        visited.add(workout_id)
        hops += 1
        yield _to_result(workout, avg_output)

        next_id = (workout.get("ftp_info") or {}).get("ftp_workout_id")
        if next_id in visited:
            logger.debug(f"FTP chain cycle at workout {next_id}")
            return
        workout_id = next_id


def get_ftp_history(
    client: PelotonClient,
    start_workout_id: Optional[str],
    max_hops: Optional[int] = None,
    deadline: Optional[float] = None,
) -> List[FtpTestResult]:
    """Eagerly collect walk_ftp_chain()."""
    return list(walk_ftp_chain(client, start_workout_id, max_hops=max_hops, deadline=deadline))
