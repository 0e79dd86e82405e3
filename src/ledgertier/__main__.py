import sys

from ledgertier.cli import main

sys.exit(main())
