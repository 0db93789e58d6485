"""Pipeline metrics API endpoint."""
from fastapi import APIRouter
from ..metrics.collector import collector

router = APIRouter(prefix="/v1", tags=["metrics"])


@router.get("/metrics")
async def get_metrics():
    """
    Get in-process pipeline counters.

    Returns JSON with:
    - uptime_seconds: Service uptime
    - counters: events received/buffered/persisted/failed/dead-lettered, per kind
    - gauges: Gauge metrics
    - histograms: flush latency statistics per kind

    Example response:
    ```json
    {
      "uptime_seconds": 123.45,
      "counters": {
        "events_buffered_total{kind=PLAYER_DIED}": 40,
        "events_persisted_total{kind=PLAYER_DIED}": 38
      },
      "gauges": {},
      "histograms": {
        "flush_latency_ms{kind=PLAYER_DIED}": {
          "count": 12,
          "sum": 84.0,
          "avg": 7.0,
          "min": 2.1,
          "max": 19.4
        }
      }
    }
    ```
    """
    return collector.get_metrics()
