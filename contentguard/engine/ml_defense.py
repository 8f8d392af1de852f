# contentguard/engine/ml_defense.py
"""
Tier two ML provider: transformer prompt-injection classifier.

One instance per model name is shared process-wide and the model is loaded
lazily on first use. torch/transformers are only imported at load time (they
ship in the optional `ml` extra); any load or inference failure propagates so
the tier-two router can fall back to the heuristic provider.

Default model: protectai/deberta-v3-base-prompt-injection-v2
"""

import logging
import threading
from typing import Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "protectai/deberta-v3-base-prompt-injection-v2"
INJECTION_LABELS = ("INJECTION", "MALICIOUS", "1", "LABEL_1")


class MLDefense:
    """
    Lazily-loaded sequence classifier.
    Uses CUDA when available, otherwise CPU.
    """

    _instances: Dict[str, 'MLDefense'] = {}
    _instances_lock = threading.Lock()

    def __init__(self, model_name: str = DEFAULT_MODEL):
        self.model_name = model_name
        self.device = None
        self.tokenizer = None
        self.model = None
        self.id2label: Dict[int, str] = {}
        self._model_loaded = False
        self._load_lock = threading.Lock()

    @classmethod
    def get_instance(cls, model_name: str = DEFAULT_MODEL) -> 'MLDefense':
        """Shared instance per model name."""
        with cls._instances_lock:
            if model_name not in cls._instances:
                cls._instances[model_name] = cls(model_name)
            return cls._instances[model_name]

    def _load_model(self) -> None:
        """Load the model and tokenizer if not already loaded."""
        with self._load_lock:
            if self._model_loaded:
                return

            import torch
            from transformers import AutoModelForSequenceClassification, AutoTokenizer

            logger.info(f"Loading model: {self.model_name}...")
            self.device = torch.device("cuda:0" if torch.cuda.is_available() else "cpu")
            self.tokenizer = AutoTokenizer.from_pretrained(self.model_name)
            self.model = AutoModelForSequenceClassification.from_pretrained(self.model_name)
            self.model.to(self.device)
            self.model.eval()
            self.id2label = dict(self.model.config.id2label)
            self._model_loaded = True
            logger.info(f"Model loaded on {self.device}")

    def injection_probability(self, text: str) -> float:
        """Probability in [0, 1] that text is a prompt injection."""
        if not text or not text.strip():
            return 0.0
        if not self._model_loaded:
            logger.info("First use detected - triggering lazy model load...")
            self._load_model()

        import torch

        inputs = self.tokenizer(
            text,
            return_tensors="pt",
            truncation=True,
            max_length=512,
            padding=True,
        )
        inputs = {k: v.to(self.device) for k, v in inputs.items()}

        with torch.no_grad():
            probabilities = torch.softmax(self.model(**inputs).logits, dim=-1)[0]

        injection = 0.0
        for idx, label in self.id2label.items():
            if str(label).upper() in INJECTION_LABELS:
                injection += probabilities[int(idx)].item()
        return round(min(max(injection, 0.0), 1.0), 4)


def get_classifier(model_name: Optional[str] = None) -> MLDefense:
    return MLDefense.get_instance(model_name or DEFAULT_MODEL)
