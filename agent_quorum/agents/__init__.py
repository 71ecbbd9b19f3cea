"""
Analysis producers for Agent Quorum.
"""

from .analysts import TemplateAnalyst, recommendation_for_signal, register_template_analysts
from .base import AnalysisProducer, AnalysisRequest, ProducerRegistry

__all__ = [
    'AnalysisProducer',
    'AnalysisRequest',
    'ProducerRegistry',
    'TemplateAnalyst',
    'recommendation_for_signal',
    'register_template_analysts',
]
