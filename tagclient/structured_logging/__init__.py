"""
Structured logging package for the tag client.

All imports should use explicit paths like
'from tagclient.structured_logging.enhanced_logging_config import get_logger'.

The directory is named 'structured_logging' rather than 'logging' to avoid
shadowing Python's standard library logging module.
"""
