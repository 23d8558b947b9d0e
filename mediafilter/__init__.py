"""
Derivative generation for repository items.

Modules:
- core: pipeline orchestration, filter strategies and task builders
- assets: eligibility checks and filename globs
- naming: derivative names and existing-derivative lookup
- registry: media type to capability mapping
- extractors: text extraction handlers
- render: image scaling, compositing and brand strips
- policies: access rule inheritance for new derivatives
- storage: content model and repositories
"""
