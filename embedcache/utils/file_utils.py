"""
File operation utilities
"""

import json
from pathlib import Path
from typing import List

from embedcache.security.input_validation import SecurityValidator


def get_image_files(directory: str, recursive: bool = True) -> List[str]:
    """Get all image files in directory, sorted"""
    path = Path(directory)
    candidates = path.rglob('*') if recursive else path.glob('*')

    return sorted(
        str(f) for f in candidates
        if f.is_file() and f.suffix.lower() in SecurityValidator.ALLOWED_EXTENSIONS
    )


def format_file_size(size_bytes: int) -> str:
    """Format file size in human readable format"""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if size_bytes < 1024.0:
            return f"{size_bytes:.2f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.2f} PB"


def write_json(data, path: str):
    """Write JSON, creating parent directories"""
    output = Path(path)
    output.parent.mkdir(parents=True, exist_ok=True)
    with open(output, 'w') as f:
        json.dump(data, f, indent=2)
