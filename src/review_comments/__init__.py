"""Review comments anchored to text spans that survive document edits."""

from review_comments.anchors import create_anchor, resolve_anchor
from review_comments.similarity import similarity

__all__ = ["create_anchor", "resolve_anchor", "similarity"]
