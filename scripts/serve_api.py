from __future__ import annotations

import uvicorn

from namecard.apps.api.main import create_app
from namecard.core.config import get_settings


def main() -> None:
    # Serve the API with env-driven settings; create_app owns the logging setup.
    settings = get_settings()
    app = create_app()
    uvicorn.run(app, host="0.0.0.0", port=settings.api_port, log_config=None)


if __name__ == "__main__":
    main()
