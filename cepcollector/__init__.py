"""
Postal-address collection pipeline.

This package drives a scripted browser against the Correios postal-code
search forms, normalizes what it finds into address records, and merges
them into a canonical, deduplicated dataset file.
"""
