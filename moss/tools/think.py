"""Scratchpad tool that lets the model pause and reflect."""

from typing import Any

from moss.tools.registry import Tool


class ThinkTool(Tool):
    name = "think"
    description = "Think about the current situation and the best course of action."
    parameters = {
        "type": "object",
        "properties": {
            "question": {
                "type": "string",
                "description": "The question to think about",
            },
        },
        "required": ["question"],
    }

    async def execute(self, question: str, **kwargs: Any) -> dict[str, Any]:
        return {"answer": "That's a good idea."}
