# core/neural_extractors.py

import cv2
import numpy as np
import torch
from transformers import CLIPModel, CLIPProcessor

from embedcache.core.feature_extractors import FeatureExtractor


class CLIPFeatureExtractor(FeatureExtractor):
    """
    CLIP image embeddings - robust to blur, crops and lighting changes
    """

    name = 'clip'

    def __init__(self, model_name: str = "openai/clip-vit-base-patch32",
                 device: str = 'cpu', **kwargs):
        super().__init__(**kwargs)
        if device == 'cuda' and not torch.cuda.is_available():
            device = 'cpu'
        self.device = device
        self.model_name = model_name
        self.model = CLIPModel.from_pretrained(model_name)
        self.processor = CLIPProcessor.from_pretrained(model_name)
        self.model.to(device)
        self.model.eval()
        self.dimension = self.model.config.projection_dim

    @torch.no_grad()
    def _extract_array(self, image: np.ndarray, options: dict) -> np.ndarray:
        image_rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)

        inputs = self.processor(images=image_rgb, return_tensors="pt")
        inputs = {k: v.to(self.device) for k, v in inputs.items()}

        image_features = self.model.get_image_features(**inputs)

        # Unit-normalized; VectorNormalizer leaves it unchanged
        image_features = image_features / image_features.norm(dim=-1, keepdim=True)

        return image_features.cpu().numpy().flatten()
