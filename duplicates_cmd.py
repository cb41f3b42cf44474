"""
Duplicates command: list files that share a digest, from the catalog alone.
"""

from pathlib import Path
from typing import Dict, List

from catalog import Catalog


def find_duplicates(db_path: Path) -> List[Dict[str, object]]:
    """Group catalog entries by digest, keeping only digests held by 2+ files."""
    groups: List[Dict[str, object]] = []
    with Catalog(db_path) as catalog:
        current_digest = None
        filenames: List[str] = []
        for digest, filename in catalog.select_duplicates():
            if digest != current_digest:
                if current_digest is not None:
                    groups.append({"digest": current_digest, "filenames": filenames})
                current_digest = digest
                filenames = []
            filenames.append(filename)
        if current_digest is not None:
            groups.append({"digest": current_digest, "filenames": filenames})
    return groups


def format_duplicates(groups: List[Dict[str, object]]) -> str:
    blocks = []
    for group in groups:
        lines = [f"{group['digest']}:"]
        lines.extend(f"  {filename}" for filename in group["filenames"])
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)
