"""Database seeder for local development and load testing."""
import asyncio
import argparse
import random
import time
from datetime import datetime, timezone, timedelta

from blog_api.database import engine, async_session, Base
from blog_api.models import ROLE_ADMIN, ROLE_MEMBER, Comment, Post, User
from blog_api.security import hash_password
from blog_api.services.post_service import slugify
from blog_api.services.tag_ledger import recount_tags

TAGS = ["python", "fastapi", "postgresql", "redis", "docker", "kubernetes",
        "react", "typescript", "aws", "devops", "testing", "performance",
        "security", "microservices", "graphql", "rest-api"]

FIRST_NAMES = ["Ada", "Alan", "Grace", "Linus", "Margaret", "Ken", "Barbara", "Dennis",
               "Frances", "John", "Radia", "Guido"]

SEED_PASSWORD = "Password123"


async def seed(small: bool = False):
    num_users = 10 if small else 50
    num_posts = 100 if small else 10000
    max_comments_per_post = 3 if small else 6

    print(f"Seeding: {num_users} users, {num_posts} posts, up to {max_comments_per_post} comments per post")
    start = time.perf_counter()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    # Every seeded account shares one password.
    password_hash = hash_password(SEED_PASSWORD)

    async with async_session() as session:
        users = []
        for i in range(num_users):
            user = User(
                name=f"{random.choice(FIRST_NAMES)} {chr(65 + i % 26)}",
                email=f"user_{i:04d}@example.com",
                password_hash=password_hash,
                bio=f"I am test user number {i}. I write about technology.",
                role=ROLE_ADMIN if i == 0 else ROLE_MEMBER,
            )
            session.add(user)
            users.append(user)
        await session.flush()
        admins = [u for u in users if u.role == ROLE_ADMIN]
        print(f"  Created {len(users)} users (login: user_0000@example.com / {SEED_PASSWORD})")

        batch_size = 500
        total_comments = 0
        for batch_start in range(0, num_posts, batch_size):
            batch_end = min(batch_start + batch_size, num_posts)
            batch = []
            for i in range(batch_start, batch_end):
                created = datetime.now(timezone.utc) - timedelta(days=random.randint(0, 365))
                title = f"Post {i}: How to optimize {random.choice(TAGS)} applications"
                post = Post(
                    title=title,
                    slug=f"{slugify(title)}-{i}",
                    content=f"This is the full content of post {i}. " * 20,
                    is_draft=random.random() < 0.1,
                    views=random.randint(0, 10000),
                    likes=random.randint(0, 500),
                    created_at=created,
                    author_id=random.choice(admins).id,
                )
                post.set_tags(random.sample(TAGS, k=random.randint(1, 4)))
                session.add(post)
                batch.append(post)
            await session.flush()

            for post in batch:
                thread: list[Comment] = []
                for _ in range(random.randint(0, max_comments_per_post)):
                    parent = random.choice(thread) if thread and random.random() < 0.4 else None
                    comment = Comment(
                        content="Great post! Very helpful for understanding the topic.",
                        post_id=post.id,
                        author_id=random.choice(users).id,
                        parent_comment_id=parent.id if parent else None,
                    )
                    session.add(comment)
                    await session.flush()
                    thread.append(comment)
                    total_comments += 1

            print(f"  Batch {batch_start}-{batch_end}: posts created")

        ledger = await recount_tags(session)
        await session.commit()

    elapsed = time.perf_counter() - start
    print(f"\nSeeding complete in {elapsed:.1f}s")
    print(f"  Users: {num_users}")
    print(f"  Posts: {num_posts}")
    print(f"  Comments: {total_comments}")
    print(f"  Tags: {ledger['corrected']}")


def main():
    parser = argparse.ArgumentParser(description="Seed the blog database")
    parser.add_argument("--small", action="store_true", help="Use small dataset (100 posts)")
    args = parser.parse_args()
    asyncio.run(seed(small=args.small))


if __name__ == "__main__":
    main()
