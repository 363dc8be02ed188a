"""
extractpdf processing backend.

An asyncio FastAPI service that decomposes uploaded documents into pages,
extracts structured records from every page with a language model
(OpenRouter via the OpenAI SDK) and aggregates the results per project.
"""

__version__ = "1.0.0"
