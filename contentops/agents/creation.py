"""Content creation agent: drafts copy with the AI provider and stores content items."""
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from contentops.agents.blueprint import AgentBlueprint, HandlerContext
from contentops.core.module_host import CapabilitySet, Collection, ModuleSpec
from contentops.services.ai_provider import AIRequest, ChatMessage

CONTENT_ITEMS = "content_items"


class CopywriterSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    model: str = "gpt-4o"
    provider: Optional[str] = None
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=800, gt=0)
    tone: str = "clear and friendly"
    system_prompt: str = "You are a marketing copywriter producing publish-ready drafts."


class Copywriter:
    """Drafts content bodies from a title and keywords."""

    def __init__(self, settings: CopywriterSettings, capabilities: CapabilitySet) -> None:
        self.settings = settings
        self._ai = capabilities.ai
        self._log = capabilities.logger

    async def draft(self, title: str, keywords: List[str], content_type: str) -> str:
        prompt = f"Write a {content_type.replace('_', ' ')} titled {title!r} in a {self.settings.tone} tone."
        if keywords:
            prompt += f" Work in these keywords naturally: {', '.join(keywords)}."
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
        body = await self._ai.generate(request)
        self._log.debug("Drafted %d characters for %r", len(body), title)
        return body


COPYWRITER = ModuleSpec(
    name="copywriter",
    factory=Copywriter,
    settings=CopywriterSettings,
    requires=("ai", "storage"),
    resources=(Collection(CONTENT_ITEMS, unique=(("slug",),), indexes=(("status",),)),),
    operations=("draft",),
)

blueprint = AgentBlueprint("creation", modules=[COPYWRITER], required_modules=("copywriter",))


class CreateContent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1)
    body: Optional[str] = None
    content_type: str = "blog_post"
    keywords: List[str] = Field(default_factory=list)
    slug: Optional[str] = None
    meta_description: Optional[str] = None


def slugify(title: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-") or "untitled"


@blueprint.command("create_content", payload=CreateContent, requires=("storage",))
async def create_content(ctx: HandlerContext, payload: CreateContent) -> Dict[str, Any]:
    body = payload.body
    if not body:
        body = await ctx.invoke("copywriter", "draft", payload.title, payload.keywords, payload.content_type)
    record = {
        "title": payload.title,
        "slug": payload.slug or slugify(payload.title),
        "body": body,
        "content_type": payload.content_type,
        "keywords": payload.keywords,
        "meta_description": payload.meta_description,
        "status": "draft",
        "created_at": ctx.clock.now().isoformat(),
    }

    async def write(tx) -> str:
        return await tx.insert(CONTENT_ITEMS, record)

    content_id = await ctx.storage.transaction(write)
    ctx.emit(
        "content_created",
        {
            "content_id": content_id,
            "title": payload.title,
            "content_type": payload.content_type,
            "keywords": payload.keywords,
        },
    )
    return {"content_id": content_id}
