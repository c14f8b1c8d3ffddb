# paywall/data/articles.py
"""Static article catalogue sold through the paywall."""
from typing import List, Optional

from paywall.api.models.article import Article

ARTICLES: List[Article] = [
    Article(
        slug="arc-blockchain-guide",
        title="The Complete Guide to Arc Blockchain",
        description="Everything you need to know about Circle's Arc L1 blockchain",
        price="$0.01",
        author="Arc Research Team",
        publishedAt="2026-01-15",
        tags=["arc", "blockchain", "circle"],
        content=(
            "# The Complete Guide to Arc Blockchain\n\n"
            "Arc is Circle's purpose-built L1 blockchain with USDC as the native gas token.\n\n"
            "## Key Features\n"
            "- EVM compatible\n"
            "- Sub-second finality\n"
            "- USDC-native gas fees\n"
            "- Built for stablecoin finance\n\n"
            "## Getting Started\n"
            "Connect to Arc Testnet using chain ID 5042002 and RPC endpoint https://rpc.testnet.arc.network\n"
        ),
    ),
    Article(
        slug="x402-micropayments",
        title="x402: The Future of Web Micropayments",
        description="How x402 enables seamless micropayments for AI agents",
        price="$0.01",
        author="x402 Protocol Team",
        publishedAt="2026-01-16",
        tags=["x402", "payments", "web3"],
        content=(
            "# x402: The Future of Web Micropayments\n\n"
            "x402 revives HTTP 402 Payment Required for the AI agent era.\n\n"
            "## How It Works\n"
            "1. Client requests resource\n"
            "2. Server returns 402 with payment requirements\n"
            "3. Client signs payment authorization\n"
            "4. Server verifies and settles on-chain\n"
            "5. Content delivered\n\n"
            "## Why It Matters\n"
            "AI agents can now autonomously pay for APIs, data, and content without human approval.\n"
        ),
    ),
    Article(
        slug="circle-gateway-guide",
        title="Circle Gateway: Unified USDC Across Chains",
        description="Instant cross-chain USDC transfers with Circle Gateway",
        price="$0.01",
        author="Circle Developer Relations",
        publishedAt="2026-01-17",
        tags=["circle", "gateway", "usdc"],
        content=(
            "# Circle Gateway: Unified USDC Across Chains\n\n"
            "Gateway provides a single USDC balance accessible across multiple blockchains.\n\n"
            "## Benefits\n"
            "- No bridging required\n"
            "- Instant settlement\n"
            "- Chain-abstracted balance\n"
            "- Lower fees than traditional bridges\n\n"
            "## Supported Chains\n"
            "Ethereum, Base, Arbitrum, Polygon, Solana, and Arc.\n"
        ),
    ),
]

PREMIUM_PRICE = "$0.01"

PREMIUM_INSIGHTS = [
    "Arc settles transactions in under 1 second with deterministic finality.",
    "USDC as native gas eliminates ETH price exposure for transaction costs.",
    "x402 enables micropayments as small as $0.001 with minimal overhead.",
    "Circle's Gateway provides unified USDC balance across all supported chains.",
    "Arc's EVM compatibility means existing Solidity contracts deploy unchanged.",
]


def get_article(slug: str) -> Optional[Article]:
    for article in ARTICLES:
        if article.slug == slug:
            return article
    return None


def get_all_articles() -> List[Article]:
    return list(ARTICLES)


def article_titles() -> dict:
    """Resource id -> title, for the stats view."""
    titles = {article.slug: article.title for article in ARTICLES}
    titles["premium"] = "Premium insight"
    return titles
