from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.deps import CreditCharge, require_credits, require_feature_credits
from app.services.generation import ContentProvider, get_content_provider
from app.services.pricing import Operation, parse_operation

router = APIRouter()


class GenerateRequest(BaseModel):
    prompt: str = Field(min_length=1, max_length=20000)
    tone: str | None = None
    max_words: int | None = Field(default=None, gt=0, le=5000)


class FeatureRequest(BaseModel):
    text: str = Field(min_length=1, max_length=50000)


@router.post("/generate")
async def generate_content(
    body: GenerateRequest,
    charge: CreditCharge = Depends(require_credits(Operation.CONTENT_GENERATION)),
    provider: ContentProvider = Depends(get_content_provider),
):
    """Generate `quantity` pieces of content. Charged only if generation succeeds."""
    contents = [
        await provider.generate(body.prompt, tone=body.tone, max_words=body.max_words)
        for _ in range(charge.quote.quantity)
    ]
    credit_info = await charge.settle()
    return {"contents": contents, "credit_info": credit_info}


@router.post("/features/{feature}")
async def run_feature(
    feature: str,
    body: FeatureRequest,
    charge: CreditCharge = Depends(require_feature_credits),
    provider: ContentProvider = Depends(get_content_provider),
):
    """Run a flat-priced feature (clone_me, plagiarism_check, export_pdf, export_word)."""
    result = await provider.run_feature(parse_operation(feature), body.text)
    credit_info = await charge.settle()
    return {"feature": charge.quote.operation.value, "result": result, "credit_info": credit_info}
