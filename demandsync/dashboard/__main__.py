"""Entry point: python -m demandsync.dashboard"""

import logging

from ..config import get_logs_dir
from .app import DemandSyncDashboard


def main() -> None:
    log_path = get_logs_dir() / "dashboard.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        filename=str(log_path),
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger = logging.getLogger("dashboard")
    try:
        app = DemandSyncDashboard()
        app.run()
    except Exception:
        logger.exception("Dashboard crashed")
        raise


if __name__ == "__main__":
    main()
