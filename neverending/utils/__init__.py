from .text import as_dict, as_list, as_text, estimate_tokens, parse_json_response, truncate_text

__all__ = ["as_dict", "as_list", "as_text", "estimate_tokens", "parse_json_response", "truncate_text"]
