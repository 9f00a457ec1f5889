"""Main entry point for running the Jetstream-AMQP Bridge.

    python -m src.jetstream_bridge
"""

import sys

from .connector import main


if __name__ == "__main__":
    sys.exit(main())
