import sys

from observatory.main import main

sys.exit(main())
