import sys

from src.rollout.cli import main

sys.exit(main())
