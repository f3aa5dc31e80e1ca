"""
scanpipeline - Turn photographed books into processed, published pages

A pipeline for:
1. Ingesting photos of book pages from files or URLs
2. Detecting two-page spreads and splitting them at the gutter
3. Running OCR, translation and summaries in resumable chunked jobs
4. Capping inference spend per run or per contributor
5. Publishing draft editions of the translated book
"""

__version__ = "1.0.0"
__author__ = "scanpipeline"

from .config import LibraryConfig
from .pipeline import PipelineRunner, PipelineStateMachine
from .split_detector import SplitDetector

__all__ = ["LibraryConfig", "PipelineRunner", "PipelineStateMachine", "SplitDetector"]
