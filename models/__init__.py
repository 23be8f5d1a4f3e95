from models.context_encoder import ContextEncoder, CONTEXT_DIM
from models.contextual_bandit import (
    Arm,
    ArmRegistry,
    ArmSelection,
    ContextualBandit,
    LinUCBSelector,
    ModelUpdater,
)
from models.records import Action, Attribution, Identity, Impression
from models.similarity import SemanticSimilarityEngine, book_text

__all__ = [
    'Action',
    'Arm',
    'ArmRegistry',
    'ArmSelection',
    'Attribution',
    'CONTEXT_DIM',
    'ContextEncoder',
    'ContextualBandit',
    'Identity',
    'Impression',
    'LinUCBSelector',
    'ModelUpdater',
    'SemanticSimilarityEngine',
    'book_text',
]
