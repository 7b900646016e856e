from setuptools import setup, find_packages

setup(
    name="dana_task_queue",
    version="1.0.0",
    description="RabbitMQ task queue client and background worker for Dana AI",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    install_requires=[
        "pika>=1.3,<2",
        "psycopg[binary]>=3.2,<4",
        "Flask>=3.0,<4",
    ],
    extras_require={
        "test": [
            "pytest>=8,<9",
        ],
    },
    python_requires=">=3.10",
)
