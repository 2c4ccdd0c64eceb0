"""PaperCheck - answer-sheet evaluation backend"""
