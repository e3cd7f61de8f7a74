"""
Try-on pipeline stages: preprocessing, classification, admission, submission,
polling, sample selection and the orchestrator tying them together.
"""
from .garment import GarmentAnalyzer
from .gate import GateState, RequestGate
from .orchestrator import TryOnOrchestrator
from .poller import JobPoller
from .preprocess import ImagePreprocessor
from .selector import SampleSelector
from .submitter import TryOnSubmitter

__all__ = [
    "GarmentAnalyzer",
    "GateState",
    "ImagePreprocessor",
    "JobPoller",
    "RequestGate",
    "SampleSelector",
    "TryOnOrchestrator",
    "TryOnSubmitter",
]
