"""
Pipeline Steps Module
=====================

- step0_background: FAL background removal
- step1_analysis: Gemini structural + enrichment analysis
- step2_consolidation: fact consolidation and control block
- step3_contract: core contract / hints compiler and legacy prompt
- step4_renderer: rendering backends and fallback dispatcher
- step5_qa: pixel QA, Gemini reviewer and bounded retry loop
- step6_delivery: S3 / GCS render storage
"""
