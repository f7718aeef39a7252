# dirmap/utils/token_counter.py
from typing import Optional

import tiktoken


class TokenCounter:
    """
    Token counter for prompts sent to the description provider.
    cl100k_base is close enough for the OpenRouter models we use.
    """
    def __init__(self, encoding_name: str = "cl100k_base"):
        self.encoding_name = encoding_name
        self._encoding: Optional[tiktoken.Encoding] = None

    @property
    def encoding(self) -> tiktoken.Encoding:
        # Loading the BPE table is slow, only do it on first use
        if self._encoding is None:
            self._encoding = tiktoken.get_encoding(self.encoding_name)
        return self._encoding

    def truncate(self, text: str, max_tokens: int) -> str:
        """Cut text down to at most max_tokens tokens."""
        if not text or max_tokens <= 0:
            return ""
        # Every token is at least one byte
        if len(text.encode("utf-8", errors="surrogateescape")) <= max_tokens:
            return text
        tokens = self.encoding.encode(text)
        if len(tokens) <= max_tokens:
            return text
        return self.encoding.decode(tokens[:max_tokens])
