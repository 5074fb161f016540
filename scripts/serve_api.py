from __future__ import annotations

import uvicorn

from fabricsec.apps.api.main import create_app
from fabricsec.core.config import get_settings


def main() -> None:
    # Env-driven bind address so compose and local runs share one entrypoint.
    settings = get_settings()
    uvicorn.run(create_app(), host=settings.api_host, port=settings.api_port, log_config=None)


if __name__ == "__main__":
    main()
