# paywall/api/endpoints/articles.py
from typing import List

from fastapi import APIRouter, HTTPException
import logging

from paywall.api.models.article import ArticleResponse, ArticleSummary
from paywall.core.config import settings
from paywall.data.articles import get_all_articles, get_article
from paywall.x402.errors import ConfigurationError
from paywall.x402.pricing import get_asset, parse_price

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/articles", response_model=List[ArticleSummary])
async def list_articles() -> List[ArticleSummary]:
    """
    List the article catalogue with prices. Free to call.

    Raises:
        HTTPException: 500 if the configured network has no settlement asset
    """
    try:
        decimals = get_asset(settings.X402_NETWORK).decimals
        return [
            ArticleSummary(
                slug=article.slug,
                title=article.title,
                description=article.description,
                price=article.price,
                amount=str(parse_price(article.price, decimals)),
                author=article.author,
                publishedAt=article.publishedAt,
                tags=article.tags,
            )
            for article in get_all_articles()
        ]
    except ConfigurationError as e:
        logger.error(f"Cannot price article catalogue: {e}")
        raise HTTPException(status_code=500, detail=e.reason)


@router.get("/article/{slug}", response_model=ArticleResponse)
async def read_article(slug: str) -> ArticleResponse:
    """
    Return the full article. Only reached after the x402 middleware settled
    the payment for this slug.

    Raises:
        HTTPException: 404 if the article does not exist
    """
    article = get_article(slug)
    if article is None:
        raise HTTPException(status_code=404, detail="Article not found")

    logger.info(f"Article served: {slug}")
    return ArticleResponse(
        slug=article.slug,
        title=article.title,
        description=article.description,
        author=article.author,
        publishedAt=article.publishedAt,
        content=article.content,
        tags=article.tags,
    )
