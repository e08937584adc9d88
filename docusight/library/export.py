"""
JSON export of the library or a single collection.

Asset records carry paths/URLs only; binary payloads never enter the export.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

from ..models.collections import Collection
from ..models.media import MediaAsset, format_datetime, utcnow
from ..models.people import Person

logger = logging.getLogger(__name__)

EXPORT_FORMAT = 'docusight-library'
EXPORT_VERSION = 1


def build_export(assets: Iterable[MediaAsset], persons: Iterable[Person],
                 collections: Iterable[Collection],
                 collection: Optional[Collection] = None) -> Dict[str, Any]:
    """
    Build the export document.

    Args:
        assets: Every asset in the library
        persons: Every person (retired ones included for audit)
        collections: Every collection
        collection: Restrict the export to this collection's members and
            the persons appearing in them

    Returns:
        JSON-serializable export document
    """
    assets = sorted(assets, key=lambda a: a.id)
    persons = sorted(persons, key=lambda p: p.id)
    collections = sorted(collections, key=lambda c: c.id)

    if collection is not None:
        members = set(collection.asset_ids)
        assets = [a for a in assets if a.id in members]
        appearing = {pid for a in assets for pid in a.person_ids}
        persons = [p for p in persons if p.id in appearing]
        collections = [collection]

    return {
        'format': EXPORT_FORMAT,
        'version': EXPORT_VERSION,
        'exported_at': format_datetime(utcnow()),
        'scope': collection.id if collection is not None else 'library',
        'assets': [a.to_dict() for a in assets],
        'persons': [p.to_dict() for p in persons],
        'collections': [c.to_dict() for c in collections],
    }


def write_export(document: Dict[str, Any], output: Union[str, Path]) -> Path:
    output = Path(output)
    output.parent.mkdir(parents=True, exist_ok=True)
    with open(output, 'w') as f:
        json.dump(document, f, indent=2)
    logger.info(f"Exported {len(document['assets'])} assets to {output}")
    return output
