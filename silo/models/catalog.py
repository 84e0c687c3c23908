"""
Built-in model catalog.

Curated models for the embedded runtime and the cloud API, plus the
tier-based recommendations for the Ollama daemon. Ollama models themselves
are discovered from the daemon at runtime and never listed here.
"""

from typing import Any, Dict, List

from silo.models.schema import (
    BackendType,
    Capability,
    HardwareTier,
    ModelDescriptor,
    make_model_id,
)

MB = 1024 * 1024

# =============================================================================
# Embedded runtime (transformers) models
# =============================================================================

TRANSFORMERS_MODELS: List[Dict[str, Any]] = [
    # Text generation
    {
        "name": "distilgpt2",
        "display_name": "DistilGPT-2",
        "hf_id": "distilbert/distilgpt2",
        "size_mb": 130,
        "capabilities": ["generate", "chat"],
        "tier": "LEAN",
        "pipeline_type": "text-generation",
        "description": "Small, fast text generation. Good for testing.",
    },
    {
        "name": "flan-t5-small",
        "display_name": "Flan-T5 Small",
        "hf_id": "google/flan-t5-small",
        "size_mb": 146,
        "capabilities": ["generate", "chat", "summarize", "question-answering"],
        "tier": "LEAN",
        "pipeline_type": "text2text-generation",
        "description": "Instruction-tuned T5. Follows simple instructions.",
    },
    {
        "name": "gpt2",
        "display_name": "GPT-2",
        "hf_id": "openai-community/gpt2",
        "size_mb": 548,
        "capabilities": ["generate", "chat"],
        "tier": "STEADY",
        "pipeline_type": "text-generation",
        "description": "Classic GPT-2 text generation.",
    },
    {
        "name": "LaMini-Flan-T5-248M",
        "display_name": "LaMini Flan-T5 248M",
        "hf_id": "MBZUAI/LaMini-Flan-T5-248M",
        "size_mb": 260,
        "capabilities": ["generate", "chat", "summarize", "question-answering"],
        "tier": "LEAN",
        "pipeline_type": "text2text-generation",
        "description": "Distilled instruction follower, better than Flan-T5 Small.",
    },
    # Embeddings
    {
        "name": "all-MiniLM-L6-v2",
        "display_name": "MiniLM L6 v2",
        "hf_id": "sentence-transformers/all-MiniLM-L6-v2",
        "size_mb": 23,
        "capabilities": ["embed"],
        "tier": "LEAN",
        "pipeline_type": "feature-extraction",
        "description": "Fast sentence embeddings (384 dimensions).",
    },
    {
        "name": "bge-small-en-v1.5",
        "display_name": "BGE Small EN v1.5",
        "hf_id": "BAAI/bge-small-en-v1.5",
        "size_mb": 33,
        "capabilities": ["embed"],
        "tier": "LEAN",
        "pipeline_type": "feature-extraction",
        "description": "High quality English embeddings.",
    },
    # Speech
    {
        "name": "whisper-tiny.en",
        "display_name": "Whisper Tiny (English)",
        "hf_id": "openai/whisper-tiny.en",
        "size_mb": 150,
        "capabilities": ["speech-to-text"],
        "tier": "LEAN",
        "pipeline_type": "automatic-speech-recognition",
        "description": "Fast English speech recognition.",
    },
    {
        "name": "whisper-small",
        "display_name": "Whisper Small",
        "hf_id": "openai/whisper-small",
        "size_mb": 460,
        "capabilities": ["speech-to-text"],
        "tier": "STEADY",
        "pipeline_type": "automatic-speech-recognition",
        "description": "Multilingual speech recognition.",
    },
    # Vision
    {
        "name": "vit-base-patch16-224",
        "display_name": "ViT Base",
        "hf_id": "google/vit-base-patch16-224",
        "size_mb": 350,
        "capabilities": ["image-classification"],
        "tier": "LEAN",
        "pipeline_type": "image-classification",
        "description": "ImageNet image classification.",
    },
    {
        "name": "resnet-50",
        "display_name": "ResNet-50",
        "hf_id": "microsoft/resnet-50",
        "size_mb": 100,
        "capabilities": ["image-classification"],
        "tier": "LEAN",
        "pipeline_type": "image-classification",
        "description": "Classic convolutional image classifier.",
    },
    {
        "name": "detr-resnet-50",
        "display_name": "DETR ResNet-50",
        "hf_id": "facebook/detr-resnet-50",
        "size_mb": 160,
        "capabilities": ["object-detection"],
        "tier": "STEADY",
        "pipeline_type": "object-detection",
        "description": "End-to-end object detection.",
    },
    {
        "name": "yolos-tiny",
        "display_name": "YOLOS Tiny",
        "hf_id": "hustvl/yolos-tiny",
        "size_mb": 28,
        "capabilities": ["object-detection"],
        "tier": "LEAN",
        "pipeline_type": "object-detection",
        "description": "Lightweight object detection.",
    },
    {
        "name": "depth-anything-small",
        "display_name": "Depth Anything Small",
        "hf_id": "LiheYoung/depth-anything-small-hf",
        "size_mb": 100,
        "capabilities": ["depth-estimation"],
        "tier": "LEAN",
        "pipeline_type": "depth-estimation",
        "description": "Monocular depth estimation.",
    },
    {
        "name": "dpt-large",
        "display_name": "DPT Large",
        "hf_id": "Intel/dpt-large",
        "size_mb": 320,
        "capabilities": ["depth-estimation"],
        "tier": "STEADY",
        "pipeline_type": "depth-estimation",
        "description": "Higher quality depth estimation.",
    },
    {
        "name": "vit-gpt2-image-captioning",
        "display_name": "ViT-GPT2 Captioning",
        "hf_id": "nlpconnect/vit-gpt2-image-captioning",
        "size_mb": 500,
        "capabilities": ["image-to-text"],
        "tier": "STEADY",
        "pipeline_type": "image-to-text",
        "description": "Generates captions for images.",
    },
    # Text classification / NLP
    {
        "name": "distilbert-base-uncased-finetuned-sst-2-english",
        "display_name": "DistilBERT SST-2",
        "hf_id": "distilbert/distilbert-base-uncased-finetuned-sst-2-english",
        "size_mb": 67,
        "capabilities": ["text-classification"],
        "tier": "LEAN",
        "pipeline_type": "text-classification",
        "description": "Sentiment analysis (positive / negative).",
    },
    {
        "name": "bart-large-mnli",
        "display_name": "BART Large MNLI",
        "hf_id": "facebook/bart-large-mnli",
        "size_mb": 400,
        "capabilities": ["zero-shot-classification"],
        "tier": "STEADY",
        "pipeline_type": "zero-shot-classification",
        "description": "Classify text into arbitrary labels.",
    },
    {
        "name": "distilbart-cnn-6-6",
        "display_name": "DistilBART CNN",
        "hf_id": "sshleifer/distilbart-cnn-6-6",
        "size_mb": 230,
        "capabilities": ["summarize"],
        "tier": "LEAN",
        "pipeline_type": "summarization",
        "description": "News-style abstractive summarization.",
    },
    {
        "name": "nllb-200-distilled-600M",
        "display_name": "NLLB-200 600M",
        "hf_id": "facebook/nllb-200-distilled-600M",
        "size_mb": 600,
        "capabilities": ["translate"],
        "tier": "STEADY",
        "pipeline_type": "translation",
        "description": "Translation between 200 languages.",
    },
]

# Default embedded model per task when the tier-based pick is not installed
TRANSFORMERS_TASK_DEFAULTS: Dict[Capability, str] = {
    Capability.IMAGE_CLASSIFICATION: "transformers:vit-base-patch16-224",
    Capability.OBJECT_DETECTION: "transformers:yolos-tiny",
    Capability.DEPTH_ESTIMATION: "transformers:depth-anything-small",
    Capability.IMAGE_TO_TEXT: "transformers:vit-gpt2-image-captioning",
    Capability.SPEECH_TO_TEXT: "transformers:whisper-tiny.en",
}

# =============================================================================
# Cloud (HuggingFace Inference) models
# =============================================================================

HUGGINGFACE_MODELS: List[Dict[str, Any]] = [
    {
        "name": "mistralai/Mistral-7B-Instruct-v0.3",
        "display_name": "Mistral 7B Instruct",
        "capabilities": ["chat", "generate"],
        "tier": "SURPLUS",
        "description": "Capable general-purpose instruction model.",
    },
    {
        "name": "deepseek-ai/DeepSeek-R1-Distill-Qwen-7B",
        "display_name": "DeepSeek R1 Distill 7B",
        "capabilities": ["chat", "generate"],
        "tier": "SURPLUS",
        "description": "Reasoning model distilled from DeepSeek R1.",
    },
    {
        "name": "meta-llama/Llama-3.2-3B-Instruct",
        "display_name": "Llama 3.2 3B Instruct",
        "capabilities": ["chat", "generate"],
        "tier": "STEADY",
        "description": "Small Llama instruction model.",
    },
    {
        "name": "black-forest-labs/FLUX.1-dev",
        "display_name": "FLUX.1 dev",
        "capabilities": ["text-to-image"],
        "tier": "SURPLUS",
        "description": "High quality text-to-image generation.",
    },
    {
        "name": "stabilityai/stable-diffusion-xl-base-1.0",
        "display_name": "Stable Diffusion XL",
        "capabilities": ["text-to-image"],
        "tier": "HEAVY",
        "description": "SDXL text-to-image generation.",
    },
]

# =============================================================================
# Ollama recommendations per hardware tier
# =============================================================================

OLLAMA_MODEL_RECOMMENDATIONS: Dict[HardwareTier, Dict[str, str]] = {
    HardwareTier.LEAN: {"vision": "moondream", "language": "llama3.2:3b"},
    HardwareTier.STEADY: {"vision": "llava:7b", "language": "mistral:7b"},
    HardwareTier.HEAVY: {"vision": "llama3.2-vision:11b", "language": "qwen2.5:14b"},
    HardwareTier.SURPLUS: {"vision": "llava:34b", "language": "deepseek-r1:70b"},
}

OLLAMA_EMBED_MODEL = "nomic-embed-text"

# Name fragments marking an Ollama model as vision-capable
OLLAMA_VISION_MARKERS = ("llava", "vision", "moondream", "bakllava")


def _descriptor(entry: Dict[str, Any], backend: BackendType) -> ModelDescriptor:
    is_cloud = backend == BackendType.HUGGINGFACE
    return ModelDescriptor(
        id=make_model_id(backend, entry["name"]),
        name=entry["display_name"],
        backend=backend,
        capabilities=frozenset(Capability(c) for c in entry["capabilities"]),
        size_bytes=entry.get("size_mb", 0) * MB,
        tier=HardwareTier(entry["tier"]),
        is_local=not is_cloud,
        description=entry.get("description"),
        hf_id=entry.get("hf_id", entry["name"]),
        pipeline_type=entry.get("pipeline_type"),
        builtin=True,
    )


def transformers_descriptors() -> List[ModelDescriptor]:
    return [_descriptor(entry, BackendType.TRANSFORMERS) for entry in TRANSFORMERS_MODELS]


def huggingface_descriptors() -> List[ModelDescriptor]:
    return [_descriptor(entry, BackendType.HUGGINGFACE) for entry in HUGGINGFACE_MODELS]


def builtin_descriptors() -> List[ModelDescriptor]:
    """All catalog descriptors, used to seed a fresh ModelRegistry."""
    return transformers_descriptors() + huggingface_descriptors()
