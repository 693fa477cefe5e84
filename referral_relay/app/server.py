from __future__ import annotations

import argparse
import logging
from typing import Optional

import uvicorn

from referral_relay.app.main import AVAILABLE_ENDPOINTS, create_app
from referral_relay.app.observability import configure_logging
from referral_relay.app.settings import load_settings

logger = logging.getLogger("referral_relay.server")


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run the GoHighLevel referral relay.")
    parser.add_argument("--host", default=None)
    parser.add_argument("--port", type=int, default=None)
    args = parser.parse_args(argv)

    settings = load_settings()
    configure_logging(settings.log_level)
    missing = settings.missing_required()
    if missing:
        for name in missing:
            logger.error("startup_aborted missing_env=%s", name)
        return 1

    host = args.host or settings.host
    port = args.port or settings.port
    logger.info(
        "relay_starting host=%s port=%s endpoints=%s rate_limit=%s/%sms location_id=%s",
        host,
        port,
        AVAILABLE_ENDPOINTS,
        settings.rate_limit_max_requests,
        settings.rate_limit_window_ms,
        settings.ghl_location_id,
    )
    uvicorn.run(create_app(settings), host=host, port=port, log_level=settings.log_level.lower())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
