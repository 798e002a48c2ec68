import sys

from vm_watcher.main import main

sys.exit(main())
