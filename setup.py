from setuptools import setup


setup(
    name="expense-intake",
    version="0.1.0",
    description="Import and classify household expenses from spreadsheets, CSV files and bank-statement PDFs",
    packages=["expense_intake"],
    python_requires=">=3.9",
    install_requires=[
        "pandas",
        "chardet",
        "openpyxl",
        "xlrd",
        "pdfplumber>=0.11",
        "pdfminer.six",
        "PyYAML",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "expense-intake=expense_intake.cli:main",
        ]
    },
)
