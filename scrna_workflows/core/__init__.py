"""Core computational modules for scRNA-Workflows.

This package contains the analysis stages:
- preprocessing: Dataset loading, gene annotation, QC, normalization, variance modelling
- integration: MNN-style batch correction in a shared PCA space
- reduction: PCA with rank selection, t-SNE and UMAP layouts
- clustering: Graph-based and k-means clustering, marker detection
- annotation: Pseudo-bulk cell-type classification against a reference
"""
