#!/usr/bin/env python3

import os
import sys

from silo import create_app
from silo.config import configure_logging

if __name__ == "__main__":
    configure_logging()
    app = create_app()

    host = os.environ.get("HOST", "127.0.0.1")
    port = int(os.environ.get("PORT", 5000))
    debug = os.environ.get("FLASK_ENV") == "development"

    print(f"Starting SILO on http://{host}:{port}")
    print("Press CTRL+C to stop the server")

    try:
        app.run(host=host, port=port, debug=debug, threaded=True, use_reloader=False)
    except KeyboardInterrupt:
        print("\nShutting down SILO...")
    finally:
        app.workbench.shutdown()
    sys.exit(0)
