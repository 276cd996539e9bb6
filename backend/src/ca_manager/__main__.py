import sys

from ca_manager.cli import main

sys.exit(main())
