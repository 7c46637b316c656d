import sys

from make_swift_package.cli import main

sys.exit(main())
