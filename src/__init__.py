"""Receipt Scanner.

An on-device receipt scanning pipeline combining OpenCV image
normalization, Tesseract OCR, and a heuristic extraction cascade to turn
receipt photos into merchant, total, and tip fields.
"""
