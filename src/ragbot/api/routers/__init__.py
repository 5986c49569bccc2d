from . import chat, knowledge

__all__ = ["chat", "knowledge"]
