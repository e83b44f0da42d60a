SPARSE_BIT_VECTORS = "2.2.4 Sparse bit vectors"
SIMILARITY_MEASURES = "2.2.4.1 Similarity measures"
LAYOUT_ALGORITHM = "5.5 Layout algorithm"
ENERGY_LONG = "5.5.1 Long-range energy"
ENERGY_SHORT = "5.5.2 Short-range energy"
ENERGIES = "5.6 Energies"
LAYOUT_COMPACTNESS = "5.7 Layout compactness"
PAIR_SELECTION = "5.8 Pair selection"
LAYOUT_PARAMETERS = "5.9 Layout parameters"
LAID_OUT_STRUCTURE = "5.10 Laid out structure"
OPTIM_SIM_MATRIX = "7.1.1 Similarity matrix"
OPTIM_PAIR_SELECTION = "7.1.4 Batched pair selection"
PARALLEL_PROCESSING = "7.1.7 Parallel processing"
GPU_IMPLEMENTATION = "7.1.8 GPU implementation"
