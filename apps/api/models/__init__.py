"""Models package."""

from .media_asset import MediaAsset
from .transcript import Transcript
from .transcript_edit import TranscriptEdit
from .study_material import StudyMaterial
from .analysis_insight import AnalysisInsight
