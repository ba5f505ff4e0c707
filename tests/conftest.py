"""Point checkpoint storage at a throwaway directory before the package is imported."""

import os
import tempfile

_STORAGE = tempfile.mkdtemp(prefix="dqn-service-tests-")
os.environ.setdefault("CHECKPOINT_DIR", os.path.join(_STORAGE, "checkpoints"))
os.environ.setdefault("USE_CUDA", "false")
