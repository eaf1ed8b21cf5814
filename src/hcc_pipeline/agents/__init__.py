"""Model-backed steps: skeleton extraction, chunk transformation, stitching, objections and repair."""
