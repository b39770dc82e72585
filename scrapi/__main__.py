import sys

from scrapi.cli import main

sys.exit(main())
