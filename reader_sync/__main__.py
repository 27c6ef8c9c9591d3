import sys

from reader_sync.main import main

sys.exit(main())
