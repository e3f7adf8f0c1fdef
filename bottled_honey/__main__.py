import sys

from bottled_honey.cli import main

sys.exit(main())
