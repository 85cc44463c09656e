# security/input_validation.py

import os
from pathlib import Path


class SecurityValidator:
    """
    Validate image references and directories before they are read
    """

    ALLOWED_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.bmp', '.gif', '.tiff', '.webp'}
    MAX_FILE_SIZE = 50 * 1024 * 1024  # 50 MB
    REMOTE_SCHEMES = ('http://', 'https://')

    @staticmethod
    def strip_file_scheme(reference: str) -> str:
        if reference.startswith('file://'):
            return reference[len('file://'):]
        return reference

    @staticmethod
    def is_remote(reference: str) -> bool:
        return reference.lower().startswith(SecurityValidator.REMOTE_SCHEMES)

    @staticmethod
    def validate_image_path(path: str) -> Path:
        """
        Resolve and check an image path

        Returns:
            The resolved path

        Raises:
            ValueError: with the reason the path was rejected
        """
        path_obj = Path(SecurityValidator.strip_file_scheme(str(path))).resolve()

        if not path_obj.is_file():
            raise ValueError(f"Not a file: {path}")

        if path_obj.suffix.lower() not in SecurityValidator.ALLOWED_EXTENSIONS:
            raise ValueError(f"Unsupported image extension: {path_obj.suffix}")

        if path_obj.stat().st_size > SecurityValidator.MAX_FILE_SIZE:
            raise ValueError(f"Image exceeds {SecurityValidator.MAX_FILE_SIZE} bytes: {path}")

        return path_obj

    @staticmethod
    def validate_directory(directory: str, allow_system_dirs: bool = False) -> bool:
        """
        Validate directory path
        """
        dir_path = Path(directory).resolve()

        if not dir_path.is_dir():
            return False

        # Prevent access to system directories
        if not allow_system_dirs:
            system_dirs = {Path('/etc'), Path('/sys'), Path('/proc')}

            for sys_dir in system_dirs:
                if sys_dir.exists() and dir_path.is_relative_to(sys_dir):
                    return False

        return os.access(dir_path, os.R_OK)
