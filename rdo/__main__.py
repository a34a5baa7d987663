import sys

from rdo.cli import main

sys.exit(main())
