"""Pipeline services.

- extraction_service: MenuExtractionService orchestrating phases 0-3
- cost_tracker: per-run token and cost ledger
- upload_cache: upload-once cache for the Gemini Files API
- spreadsheet_parser: workbook reading and direct row-to-item conversion
- vocabulary: allowed categories and sizes
"""
