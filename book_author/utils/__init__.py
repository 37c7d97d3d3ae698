from .logger import session_trace, setup_logger
from .text import count_words, parse_json_response

__all__ = ["setup_logger", "session_trace", "count_words", "parse_json_response"]
