"""
EdgeForge: website optimization build pipeline.

Takes crawled page content plus per-site optimization settings and produces
an optimized, content-addressed static copy ready for redeployment.

Packages:
- settings: typed settings schema, sparse overrides, resolution and history
- classifiers: heuristic video/widget/placement scoring
- optimizers: per-asset-type transformers (CSS, JS, images, fonts, SVG, facades)
- assets: image reference scanning, CDN migration and URL rewriting
- pipeline: build model, staged orchestrator, checkpoints, events
- jobs: bounded worker queues for builds, agent runs and monitors
- persistence: SQLite-backed storage
"""

__version__ = "0.1.0"
