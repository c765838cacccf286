"""
Blocktree - schema-driven block trees for business-object pages.

Blocks mix inline data, owned children held in named slots, and linked
references to other entities. The runtime package provides the children
and reference services, the display linter and the render evaluator.
"""

__version__ = "0.4.0"
