import sys

from bootshelf.main import main

sys.exit(main())
