"""ContentForge: LLM blog generation with competitor research."""
