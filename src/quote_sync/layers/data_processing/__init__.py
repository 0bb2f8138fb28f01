"""
データ処理層 - 名言データのJSONエクスポート・インポート
"""

from .record_io import dump_records, export_filename, export_records, parse_records, read_records_file

__all__ = ['dump_records', 'export_filename', 'export_records', 'parse_records', 'read_records_file']
