"""
Well Image Pipeline

Independently paced stages joined per job by the correlator:
1. Image loading - Decode and prepare the model input and the well image
2. Inference - Micro-batched Mask R-CNN drop and crystal segmentation
3. Well centering - Hough circle localisation of the well
4. Postprocessing - Drop and crystal boxes and the optimal insertion point
"""
