"""Optimisation agent: SEO recommendations for stored content."""
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from contentops.agents.blueprint import AgentBlueprint, HandlerContext
from contentops.core.envelope import EventEnvelope
from contentops.core.errors import NotFound
from contentops.core.module_host import CapabilitySet, Collection, ModuleSpec
from contentops.services.ai_provider import AIRequest, ChatMessage

SEO_RECOMMENDATIONS = "seo_recommendations"


class SeoOptimizerSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    model: str = "gpt-4o"
    provider: Optional[str] = None
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    max_tokens: int = Field(default=600, gt=0)
    use_ai: bool = True
    title_min_length: int = Field(default=30, ge=1)
    title_max_length: int = Field(default=60, ge=1)
    meta_max_length: int = Field(default=160, ge=1)
    system_prompt: str = (
        "You are an SEO specialist. Reply with one concrete recommendation per line, no preamble."
    )


class SeoOptimizer:
    """Heuristic checks plus AI suggestions for one content item."""

    def __init__(self, settings: SeoOptimizerSettings, capabilities: CapabilitySet) -> None:
        self.settings = settings
        self._ai = capabilities.ai

    async def generate_recommendations(self, content: Dict[str, Any], keywords: List[str]) -> List[Dict[str, Any]]:
        recommendations = self.check(content, keywords)
        if self.settings.use_ai:
            recommendations.extend(await self._suggest(content, keywords))
        return recommendations

    def check(self, content: Dict[str, Any], keywords: List[str]) -> List[Dict[str, Any]]:
        settings = self.settings
        title = content.get("title") or ""
        body = (content.get("body") or "").lower()
        meta = content.get("meta_description") or ""
        found: List[Dict[str, Any]] = []

        if len(title) < settings.title_min_length:
            found.append(_recommendation("title", "medium", f"Lengthen the title to at least {settings.title_min_length} characters."))
        elif len(title) > settings.title_max_length:
            found.append(_recommendation("title", "medium", f"Shorten the title to {settings.title_max_length} characters or fewer."))
        if not meta:
            found.append(_recommendation("meta_description", "high", "Add a meta description."))
        elif len(meta) > settings.meta_max_length:
            found.append(_recommendation("meta_description", "low", f"Trim the meta description to {settings.meta_max_length} characters."))
        for keyword in keywords:
            mentions = len(re.findall(rf"\b{re.escape(keyword.lower())}\b", body))
            if mentions == 0:
                found.append(_recommendation("keyword", "high", f"Mention {keyword!r} in the body."))
            if keyword.lower() not in title.lower():
                found.append(_recommendation("keyword", "low", f"Consider using {keyword!r} in the title."))
        return found

    async def _suggest(self, content: Dict[str, Any], keywords: List[str]) -> List[Dict[str, Any]]:
        prompt = f"Title: {content.get('title', '')}\nKeywords: {', '.join(keywords) or 'none'}\n\n{(content.get('body') or '')[:4000]}"
        request = AIRequest(
            provider_hint=self.settings.provider,
            model_hint=self.settings.model,
            messages=[
                ChatMessage(role="system", content=self.settings.system_prompt),
                ChatMessage(role="user", content=prompt),
            ],
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_tokens,
        )
        text = await self._ai.generate(request)
        lines = (line.strip().lstrip("-*0123456789. ").strip() for line in text.splitlines())
        return [_recommendation("ai_suggestion", "medium", line) for line in lines if line]


def _recommendation(kind: str, priority: str, message: str) -> Dict[str, Any]:
    return {"type": kind, "priority": priority, "message": message}


SEO_OPTIMIZER = ModuleSpec(
    name="seo_optimizer",
    factory=SeoOptimizer,
    settings=SeoOptimizerSettings,
    requires=("ai", "storage"),
    resources=(Collection(SEO_RECOMMENDATIONS, indexes=(("content_id",),)),),
    operations=("generate_recommendations",),
)

blueprint = AgentBlueprint("optimisation", modules=[SEO_OPTIMIZER], required_modules=("seo_optimizer",))


class GenerateSeo(BaseModel):
    model_config = ConfigDict(extra="forbid")

    content_id: str = Field(min_length=1)
    keywords: List[str] = Field(default_factory=list)


@blueprint.command("generate_seo", payload=GenerateSeo, requires=("storage", "ai"))
async def generate_seo(ctx: HandlerContext, payload: GenerateSeo) -> Dict[str, Any]:
    content = await ctx.storage.get("content_items", {"id": payload.content_id})
    if content is None:
        raise NotFound(f"content item {payload.content_id!r} does not exist")
    keywords = payload.keywords or list(content.get("keywords") or [])
    recommendations = await ctx.invoke("seo_optimizer", "generate_recommendations", content, keywords)
    record = {
        "content_id": payload.content_id,
        "keywords": keywords,
        "recommendations": recommendations,
        "created_at": ctx.clock.now().isoformat(),
    }

    async def write(tx) -> str:
        return await tx.insert(SEO_RECOMMENDATIONS, record)

    recommendations_id = await ctx.storage.transaction(write)
    ctx.emit(
        "seo_recommendations",
        {
            "content_id": payload.content_id,
            "recommendations_id": recommendations_id,
            "count": len(recommendations),
        },
    )
    return {"recommendations_id": recommendations_id, "count": len(recommendations)}


@blueprint.on_event("creation.content_created")
async def on_content_created(ctx: HandlerContext, event: EventEnvelope) -> None:
    ctx.send(
        "optimisation",
        "generate_seo",
        {"content_id": event.payload["content_id"], "keywords": event.payload.get("keywords", [])},
    )
