"""
Stage 1: Product Analysis — WaveSpeed LLM.

Turns the product URL / name on the project into structured product_data
that every later stage reads (selling points, hook angle, category, ...).
"""

import json
import logging
import time

from . import audit
from .errors import StageFailure, ValidationError
from .structured import generate_structured

logger = logging.getLogger(__name__)

PRODUCT_CATEGORIES = [
    "supplements", "skincare", "fitness", "tech", "kitchen",
    "fashion", "home", "baby", "pet", "finance",
]

REQUIRED_FIELDS = ("product_name", "category", "selling_points", "hook_angle")

SYSTEM_PROMPT = f"""You are a product analyst for short-form UGC video ads.
Extract structured data that downstream agents use to write scripts and generate visuals.

Respond with ONLY a JSON object with these fields:
{{
  "product_name": "...",
  "brand": "...",
  "product_type": "...",
  "category": "one of: {', '.join(PRODUCT_CATEGORIES)}",
  "selling_points": ["3-5 points that make this product stand out"],
  "key_claims": ["3-5 factual claims, with numbers when possible"],
  "usage": "...",
  "benefits": ["..."],
  "hook_angle": "the specific scroll-stopping strategy for a 60s video",
  "product_image_url": "main product image URL or empty string",
  "image_description": "visual description of the packaging for image generation",
  "avatar_description": "the ideal on-camera presenter for this product"
}}"""


class ProductAnalysisAgent:
    name = "ProductAnalysisAgent"
    stage = "product_analysis"

    def __init__(self, store, llm):
        self.store = store
        self.llm = llm

    def _user_prompt(self, project: dict) -> str:
        prompt = ""
        if project.get("product_url"):
            prompt += f"Product URL: {project['product_url']}\n"
        if project.get("product_name"):
            prompt += f"Product name: {project['product_name']}\n"
        if project.get("product_category"):
            prompt += f"Known category: {project['product_category']}\n"
        if project.get("product_data"):
            prompt += f"Existing product data: {json.dumps(project['product_data'])}\n"
        return prompt

    async def run(self, project_id: str) -> dict:
        started = time.monotonic()
        audit.log_event(self.store, project_id, audit.STAGE_START, self.stage, agent_name=self.name)

        project = self.store.get_project(project_id)
        if not project.get("product_url") and not project.get("product_name"):
            raise ValidationError(f"Project {project_id} has no product_url or product_name")

        logger.info(f"[{project_id}] analyzing product")
        data = await generate_structured(
            self.llm, self.store, project_id, self.stage,
            SYSTEM_PROMPT, self._user_prompt(project),
            expect=dict, temperature=0.3, agent_name=self.name,
        )

        missing = [f for f in REQUIRED_FIELDS if not data.get(f)]
        if missing:
            raise StageFailure(f"Product analysis missing fields: {', '.join(missing)}")
        if data["category"] not in PRODUCT_CATEGORIES:
            logger.warning(f"[{project_id}] unknown category '{data['category']}'")

        self.store.update_project(project_id, {
            "product_data": data,
            "product_category": data["category"],
            "product_name": project.get("product_name") or data["product_name"],
        })

        audit.log_event(self.store, project_id, audit.STAGE_COMPLETE, self.stage, {
            "durationMs": int((time.monotonic() - started) * 1000),
            "category": data["category"],
        }, agent_name=self.name)
        logger.info(f"[{project_id}] analysis complete: {data['product_name']} ({data['category']})")
        return data
