from datetime import datetime
from typing import Dict, List

from ..config import settings
from ..services.refresh import RefreshState, SeriesRefresher


def get_status(refresher: SeriesRefresher) -> List[Dict[str, object]]:
    now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    rows = refresher.status()
    out: List[Dict[str, object]] = []
    for row in rows:
        out.append(
            {
                "component": f"market:{row['key']}",
                "asof": now,
                "source": row.get("provider") or "unavailable",
                "ok": row["state"] != RefreshState.MISSING.value,
            }
        )
    out.append({"component": "method", "asof": now, "source": settings.method_version, "ok": True})
    return out
