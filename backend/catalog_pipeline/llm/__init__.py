"""
LLM Client Package

Thin async wrapper over a LangChain chat model used for column mapping:
  - OpenAI           (gpt-4o, gpt-4o-mini)
  - Azure OpenAI     (same models, deployment-based endpoint)

Public API::

    from catalog_pipeline.llm import LLMClient

    llm = LLMClient.from_settings(get_settings())
    completion = await llm.complete(prompt)
    completion.content, completion.cost_usd
"""

from catalog_pipeline.llm.client import LLMClient, LLMCompletion, compute_cost

__all__ = [
    "LLMClient",
    "LLMCompletion",
    "compute_cost",
]
