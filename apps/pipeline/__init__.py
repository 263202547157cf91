"""
Turn-coordination core for the 911 operator voice engine.

Timeline, turn coordinator, tool dispatch, enrichment and the adapters
that connect them to Groq, JigsawStack and the audio devices.
"""
