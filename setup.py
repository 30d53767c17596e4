from setuptools import setup, find_packages

setup(
    name="bulknotify",
    version="0.1.0",
    description="Bulk notification dispatch over email, SMS and push with throttled batches and task tracking",
    author="",
    author_email="",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.10",
    install_requires=[
        "SQLAlchemy>=2.0.0",
        "Jinja2>=3.0.0",
        "sendgrid>=6.9.0",
        "python-http-client>=3.3.0",
        "python-dotenv>=0.19.0",
        "click>=8.0.0",
        "rich>=12.0.0",
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        "python-dateutil>=2.8.0",
        "redis>=4.2.0",
        "requests>=2.28.0",
        "PyYAML>=5.4.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "bulknotify=bulknotify.cli:main",
        ],
    },
)
