from .library import PatternLibrary, normalize_header, parse_problem_flag

__all__ = ["PatternLibrary", "normalize_header", "parse_problem_flag"]
