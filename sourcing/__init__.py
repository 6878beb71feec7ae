"""
sourcing - Smart Finder reports, supplier shortlists, premium sourcing
requests, supplier leads and admin settings.
"""
