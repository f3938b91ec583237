"""Shell around the merge and interpolation engines.

Modules:
- constants: storage key, pipeline stages, run statuses
- parser: model reply validation into Datasets
- extraction: vision clients, prompts, extract/verify stages
- pipeline: the extract -> verify state machine
- store: SQLite persistence of the dataset and run history
- export: CSV/JSON rendering
- service: BarrelDataService, owner of the current dataset
- frontend.app: Starlette JSON API
"""

from .store import DatasetStore
from .service import BarrelDataService
from .pipeline import AnalysisOutcome, AnalysisPipeline
from .frontend.app import create_app

__all__ = [
    "DatasetStore",
    "BarrelDataService",
    "AnalysisOutcome",
    "AnalysisPipeline",
    "create_app",
]
