"""
Chat platform glue for AI Reply Guard.

Connects the mention handler to Discord.
"""
