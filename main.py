import sys

from db_purger.cli import main

if __name__ == "__main__":
    sys.exit(main())
