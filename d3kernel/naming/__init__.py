"""Metadata of named objects: mode bits and stat records."""