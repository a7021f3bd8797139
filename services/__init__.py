"""
Services for the video generation pipeline:
- video_generation: provider client, orchestrator, ledger, recovery
- storage: permanent object storage for relocated media
- auth: session lookup
"""
