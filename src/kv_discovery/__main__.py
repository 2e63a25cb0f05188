import sys

from kv_discovery.cli import main

if __name__ == "__main__":
    sys.exit(main())
