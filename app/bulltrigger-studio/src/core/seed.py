from __future__ import annotations

import json

from sqlalchemy import select

from core.db import session_scope
from core.models import (
    FlowEdge,
    FlowNode,
    HANDLE_DEFAULT,
    NODE_TYPE_API,
    NODE_TYPE_MODEL,
    NODE_TYPE_START,
    NODE_TYPE_STRATEGY_TRIGGER,
    NODE_TYPE_TELEGRAM_MESSAGE,
    Strategy,
)

CRYPTO_TIP_STRATEGY = "Crypto Tip"
BTC_ANALYSIS_STRATEGY = "BTC Market Analysis"

STRATEGY_SEEDS = [
    {
        "name": CRYPTO_TIP_STRATEGY,
        "description": "Provides crypto trading tips and sends them to Telegram.",
        "cron": "0 12 * * *",
        "nodes": [
            {"node_type": NODE_TYPE_START, "name": "Start"},
            {
                "node_type": NODE_TYPE_MODEL,
                "name": "Generate Crypto Tip",
                "output_variable": "crypto_tip",
                "config": {
                    "model_tier": "cheap",
                    "system_prompt": (
                        "You are a helpful crypto trading educator. Provide educational "
                        "tips and insights for crypto traders."
                    ),
                    "user_prompt": (
                        "Generate a useful crypto trading tip for today. Focus on general "
                        "trading principles, risk management, or market insights. Keep it "
                        "educational and practical."
                    ),
                    "include_api_data": False,
                },
            },
            {
                "node_type": NODE_TYPE_TELEGRAM_MESSAGE,
                "name": "Send Crypto Tip",
                "config": {
                    "message_template": "💡 *Daily Crypto Tip*\n\n{{crypto_tip}}",
                    "message_type": "success",
                    "parse_mode": "Markdown",
                },
            },
        ],
    },
    {
        "name": BTC_ANALYSIS_STRATEGY,
        "description": (
            "Analyzes BTC price and the fear/greed index, sends the analysis to "
            "Telegram and triggers the crypto tip."
        ),
        "cron": "0 9 * * *",
        "nodes": [
            {"node_type": NODE_TYPE_START, "name": "Start"},
            {
                "node_type": NODE_TYPE_API,
                "name": "Get BTC Price",
                "output_variable": "btc_price",
                "config": {
                    "method": "GET",
                    "url": "https://api.binance.com/api/v3/ticker/price?symbol=BTCUSDT",
                    "json_path": "$.price",
                    "cast_to_number": True,
                },
            },
            {
                "node_type": NODE_TYPE_API,
                "name": "Get Fear & Greed Index",
                "output_variable": "fear_greed_index",
                "config": {
                    "method": "GET",
                    "url": "https://api.alternative.me/fng/",
                    "json_path": "$.data[0].value",
                },
            },
            {
                "node_type": NODE_TYPE_MODEL,
                "name": "Market Analysis",
                "output_variable": "market_analysis",
                "config": {
                    "model_tier": "cheap",
                    "system_prompt": (
                        "You are a crypto market analyst. Analyze the provided BTC price "
                        "and fear/greed index data."
                    ),
                    "user_prompt": (
                        "Based on the current BTC price and fear/greed index, provide a "
                        "brief market analysis with key insights and potential trading "
                        "signals. Keep it concise and actionable."
                    ),
                    "include_api_data": True,
                },
            },
            {
                "node_type": NODE_TYPE_TELEGRAM_MESSAGE,
                "name": "Send Market Analysis",
                "config": {
                    "message_template": (
                        "🔍 *Daily Market Analysis*\n\n📊 BTC Price: ${{btc_price}}\n"
                        "😱 Fear & Greed: {{fear_greed_index}}\n\n{{market_analysis}}"
                    ),
                    "message_type": "info",
                    "parse_mode": "Markdown",
                },
            },
            {
                "node_type": NODE_TYPE_STRATEGY_TRIGGER,
                "name": "Trigger Crypto Tip",
                "config": {
                    "target_strategy": CRYPTO_TIP_STRATEGY,
                    "wait_for_completion": False,
                },
            },
        ],
    },
]


def seed_defaults() -> None:
    with session_scope() as session:
        existing = {
            strategy.name: strategy
            for strategy in session.execute(select(Strategy)).scalars().all()
        }
        for payload in STRATEGY_SEEDS:
            if payload["name"] in existing:
                continue
            existing[payload["name"]] = _seed_strategy(session, payload, existing)


def _seed_strategy(session, payload: dict, existing: dict[str, Strategy]) -> Strategy:
    strategy = Strategy.create(
        session,
        name=payload["name"],
        description=payload.get("description"),
        cron=payload.get("cron"),
        enabled=True,
    )
    previous = None
    for index, node_payload in enumerate(payload["nodes"]):
        config = dict(node_payload.get("config") or {})
        target_name = config.pop("target_strategy", None)
        if target_name:
            target = existing.get(target_name)
            config["target_strategy_id"] = target.id if target is not None else None
        node = FlowNode.create(
            session,
            strategy_id=strategy.id,
            node_type=node_payload["node_type"],
            name=node_payload.get("name"),
            config_json=json.dumps(config, sort_keys=True),
            output_variable=node_payload.get("output_variable"),
            enabled=True,
            order_index=index,
        )
        if previous is not None:
            FlowEdge.create(
                session,
                strategy_id=strategy.id,
                source_node_id=previous.id,
                source_handle=HANDLE_DEFAULT,
                target_node_id=node.id,
            )
        previous = node
    return strategy
