"""Face identity building blocks (preprocess/store/matcher/persistence/extractor).

`FaceRecognizer` in `recognizer.py` ties them together; the pieces stay usable on
their own.
"""
