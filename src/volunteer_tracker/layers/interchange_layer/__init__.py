"""
入出力層 - CSV/TSVによるエントリーのエクスポート・インポート
"""

from .csv_codec import (
    CSV_HEADER,
    CsvImport,
    CsvImportError,
    CsvImportResult,
    EmptyInput,
    HeaderMismatch,
    RowError,
    RowValidationError,
    import_all,
    parse_csv,
    parse_line,
    serialize_all,
    serialize_row,
    serialize_tsv_all,
    serialize_tsv_row,
)

__all__ = [
    'CSV_HEADER', 'CsvImport', 'CsvImportError', 'CsvImportResult',
    'EmptyInput', 'HeaderMismatch', 'RowError', 'RowValidationError',
    'import_all', 'parse_csv', 'parse_line',
    'serialize_all', 'serialize_row', 'serialize_tsv_all', 'serialize_tsv_row',
]
