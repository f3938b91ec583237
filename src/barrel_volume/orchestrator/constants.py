from __future__ import annotations

from typing import Tuple

# Wet-height column name the extraction prompt asks the model to use.
PRIMARY_KEY_COLUMN = "Mouillé"

# Single logical key the dataset is persisted under.
STORAGE_KEY = "barrelData"

# Analysis pipeline states.
STAGE_IDLE = "idle"
STAGE_EXTRACTING = "extracting"
STAGE_VERIFYING = "verifying"
STAGE_DONE = "done"
STAGE_FAILED = "failed"
STAGE_CANCELLED = "cancelled"

STAGE_LABELS = {
    STAGE_EXTRACTING: "extraction",
    STAGE_VERIFYING: "verification",
}

# Status values recorded in the analysis_runs table.
RUN_STATUS_OK = "OK"
RUN_STATUS_ERROR = "ERROR"
RUN_STATUS_CANCELLED = "CANCELLED"

RUN_STATUS_CHOICES: Tuple[str, ...] = (
    RUN_STATUS_OK,
    RUN_STATUS_ERROR,
    RUN_STATUS_CANCELLED,
)
