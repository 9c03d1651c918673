import sys

from whisper_engine.cli import main

sys.exit(main())
