"""
Supermarket price scraper.

Renders configured supermarket listing pages (in a browser or over plain
HTTP), extracts product prices, validates them and stores them as
diffable CSV files, one per target and day.
"""
