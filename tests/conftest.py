import sys
from pathlib import Path

import pytest

# Ensure project root is on sys.path for `import mcranksync`
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from mcranksync.models import close_store, init_store  # noqa: E402


@pytest.fixture
def models(tmp_path):
    store = init_store(str(tmp_path / "data" / "mcranksync.db"))
    yield store
    close_store(store)
