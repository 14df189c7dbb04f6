"""Development server entry point."""

import logging
import os

from waitress import serve

from fleetctl import create_app
from fleetctl.config import Settings


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    settings = Settings.load()
    app = create_app(settings)
    app.container.lifecycle_coordinator().install_signal_handlers()

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "3201"))

    if settings.debug:
        app.logger.info("Running in debug mode with Flask development server")
        # The reloader would start background services twice
        app.run(host=host, port=port, debug=True, use_reloader=False)
    else:
        app.logger.info("Running in production mode with Waitress")
        serve(app, host=host, port=port, threads=4)


if __name__ == "__main__":
    main()
