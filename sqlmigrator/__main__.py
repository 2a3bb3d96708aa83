import sys

from sqlmigrator.cli import main

sys.exit(main())
