"""
Exam Question Extraction Engine
===============================
Turns multi-subject exam PDFs into structured question records.

Architecture:
    - Page Rasterizer: Renders each PDF page to a PNG for vision models
    - Diagram Extractor: Pulls embedded figures, drops icons and watermarks
    - Text Extractor: Cascading regex grammars for digitally clean papers
    - Vision Extractor: Page-by-page model extraction with renumbering
    - Diagram Mapper: Assigns page diagrams to flagged questions
    - Completeness Validator: Deactivates partial records, fills gaps
    - Cost Ledger: Retries external AI calls and records every attempt

Version: 1.0.0
"""

__version__ = "1.0.0"
