import sys

from veilkyc.cli import main

sys.exit(main())
