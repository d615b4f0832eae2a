import sys
from pathlib import Path

import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]

# Prefer repo sources over any installed package.
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from listing_schema import PropertyRecord  # noqa: E402


def build_record(record_id, **overrides):
    fields = {
        "address": "Via Roma 10",
        "city": "Milano",
        "price": 300_000,
        "size": 80.0,
        "portal": f"agency-{record_id}",
        "external_link": f"https://example.com/listing/{record_id}",
        "type": "apartment",
        "description": "Bilocale luminoso",
    }
    fields.update(overrides)
    return PropertyRecord(id=record_id, **fields)


@pytest.fixture
def make_record():
    return build_record
