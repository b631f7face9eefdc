import os
from typing import Optional, Tuple

from dotenv import load_dotenv

# ---------- Workflow ids ----------

WORKFLOW_ID_STYLE = "7582884589447151643"
WORKFLOW_ID_ENTITIES = "7582889307032272930"
WORKFLOW_ID_CHARACTER_PROMPT = "7586528499697451062"
WORKFLOW_ID_SCENE_PROMPT = "7584007850298228799"
# Characters and scenes share one image workflow
WORKFLOW_ID_CHARACTER_IMAGE = "7586599921504010283"
WORKFLOW_ID_SCENE_IMAGE = "7586599921504010283"

# ---------- Image model selection ----------

DEFAULT_IMAGE_MODEL = "Doubao-Seedream-4.0"
CHARACTER_VIEW_SIZE = (2048, 2048)


def scene_image_size(model: str) -> Tuple[int, int]:
    """Select the 16:9 output size supported by the image model.

    The 3.0 model caps out around 2k, so it gets 2048x1152; newer models
    get 2560x1440.
    """
    if "3.0" in model:
        return 2048, 1152
    return 2560, 1440


# ---------- Credentials ----------

def get_api_key(explicit: Optional[str] = None) -> str:
    """Return the caller's key, falling back to $COZE_API_KEY (.env aware)."""
    if explicit:
        return explicit
    load_dotenv()
    return os.getenv("COZE_API_KEY", "")
