import sys

from sandboxgen.cli import main

sys.exit(main())
