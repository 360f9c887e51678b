import os
import sys
import tempfile

# Keep tests away from audio hardware and the repo's logs/ directory
os.environ.setdefault("VERA_NO_AUDIO", "1")
os.environ.setdefault("VERA_LOG_FILE", os.path.join(tempfile.gettempdir(), "vera-tests.log"))

sys.path.append(os.path.join(os.path.dirname(__file__), '..', 'src'))
