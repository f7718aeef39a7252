# dirmap/utils/file_types.py
from typing import Optional


class FileTypeDetector:
    """
    Maps a file extension to the language tag of its extraction rule.
    """

    LANGUAGE_EXTENSIONS = {
        ".py": "python",
        ".js": "javascript",
        ".jsx": "javascript",
        ".ts": "typescript",
        ".tsx": "typescript",
        ".go": "go",
        ".rs": "rust",
        ".java": "java",
        ".kt": "kotlin",
        ".php": "php",
        ".rb": "ruby",
        ".swift": "swift",
        ".c": "c",
        ".h": "c",
        ".cpp": "cpp",
        ".hpp": "cpp",
        ".cs": "csharp",
        ".csx": "csharp",
        ".lua": "lua",
        ".zig": "zig",
        ".groovy": "groovy",
    }

    def language(self, ext: str) -> Optional[str]:
        """Language tag for an extension (with or without the dot)."""
        if not ext.startswith("."):
            ext = f".{ext}"
        return self.LANGUAGE_EXTENSIONS.get(ext.lower())
