# paywall/api/models/article.py
from typing import List

from pydantic import BaseModel


class Article(BaseModel):
    """
    A paywalled article. ``price`` is a human USD amount ("$0.01").
    """
    slug: str
    title: str
    description: str
    price: str
    author: str
    publishedAt: str
    tags: List[str]
    content: str


class ArticleSummary(BaseModel):
    """
    Free listing entry: everything except the content.
    """
    slug: str
    title: str
    description: str
    price: str
    amount: str  # smallest units of the settlement asset
    author: str
    publishedAt: str
    tags: List[str]


class ArticleResponse(BaseModel):
    """
    Response model for a purchased article.
    """
    slug: str
    title: str
    description: str
    author: str
    publishedAt: str
    content: str
    tags: List[str]
