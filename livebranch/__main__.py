import sys

from livebranch.cli import main

sys.exit(main())
