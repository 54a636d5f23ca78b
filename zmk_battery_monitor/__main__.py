import sys

from zmk_battery_monitor.cli import main

sys.exit(main())
