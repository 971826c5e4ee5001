"""
Query execution and editable-grid engine.

Execution controller, result buffer, grid view model, row identity
resolution and write-back. Import components from their modules.
"""
