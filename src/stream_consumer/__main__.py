"""Run the stream consumer: python -m src.stream_consumer [number_of_messages]"""

import sys

from .consumer import main


if __name__ == "__main__":
    sys.exit(main())
