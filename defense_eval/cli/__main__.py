import sys

from defense_eval.cli import main

sys.exit(main())
