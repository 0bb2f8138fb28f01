"""
quote-sync - 名言コレクションのローカルレプリカとリモートの同期・競合解決
"""

__version__ = "1.0.0"
