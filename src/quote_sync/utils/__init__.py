"""ユーティリティ"""
