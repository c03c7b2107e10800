"""sedord: NMDS ordination and environmental fitting for sediment communities.

Computes sample dissimilarities from a samples-by-taxa count table, embeds
them with non-metric multidimensional scaling, and fits sediment chemistry
and physical variables onto the embedding with permutation tests.
"""

__version__ = "0.1.0"
