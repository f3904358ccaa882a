from setuptools import setup, find_namespace_packages

setup(
    name="database-clone",
    version="0.1",
    packages=find_namespace_packages(include=["dbclone*"]),
    py_modules=["main"],
    install_requires=[
        "loguru",
        "sqlalchemy>=2.0",
        "pymysql",
        "psycopg2-binary",
        "pyodbc",
        "faker",
    ],
    extras_require={
        "test": ["pytest"],
    },
)
