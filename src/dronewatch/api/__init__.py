"""Pull query surface: HTTP app and its client."""
